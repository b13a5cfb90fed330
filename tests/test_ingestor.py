from __future__ import annotations

import asyncio
import itertools

import pytest

from ingestion.ingestor import (
    SKIP_DUPLICATE,
    SKIP_INCONSISTENT,
    SKIP_STALE,
    SKIP_TERMINAL,
    EventIngestor,
    sort_deltas,
)
from ingestion.normalize import normalize_event, snapshot_delta
from lifecycle.models import EntityKind, JobStatus
from storage.cache_store import CacheStore
from sync.collector import DeltaCollector

from tests.fakes import (
    ESCROW,
    FREELANCER,
    FakeChainReader,
    block_ts,
    escrow_snapshot,
    job_snapshot,
    load_scenario_a,
    make_event,
    scenario_a_events,
)


@pytest.fixture
def history():
    chain = FakeChainReader(head=200)
    load_scenario_a(chain)
    return chain


def _deltas(chain, store, events):
    collector = DeltaCollector(chain, store.reader())
    return sort_deltas(asyncio.run(collector.event_deltas(events)))


def test_scenario_a_full_lifecycle(store, ingestor, history):
    board, escrow = scenario_a_events()

    counts = ingestor.apply_all(_deltas(history, store, board + escrow))

    assert counts == {"applied": 6}
    job = store.get(EntityKind.JOB, "1").entity
    assert job.status is JobStatus.COMPLETED
    assert job.escrow_address == ESCROW
    assert job.hired_freelancer == FREELANCER

    record = store.get(EntityKind.ESCROW, ESCROW)
    assert record.entity.terminal is True
    assert record.entity.job_id == 1
    assert len(record.entity.delivery_history) == 1
    assert record.entity.delivery_history[0].version == 1
    assert record.position == (115, 0)


def test_events_read_state_at_their_own_block(store, history):
    board, _ = scenario_a_events()

    deltas = _deltas(history, store, board)

    statuses = [(d.block_number, d.fields["status"]) for d in deltas if d.kind is EntityKind.JOB]
    assert statuses == [(100, int(JobStatus.OPEN)), (105, int(JobStatus.HIRED)), (115, int(JobStatus.COMPLETED))]
    escrow = [d for d in deltas if d.kind is EntityKind.ESCROW]
    assert escrow[0].fields["job_id"] == 1
    assert escrow[0].fields["delivered"] is False


def test_scenario_b_duplicate_delivery_is_applied_once(store, ingestor, history):
    board, escrow = scenario_a_events()
    ingestor.apply_all(_deltas(history, store, board[:2]))
    delivered = _deltas(history, store, escrow[:1])[0]

    first = ingestor.apply(delivered)
    second = ingestor.apply(delivered)

    assert first.applied
    assert second.reason == SKIP_DUPLICATE
    assert len(store.get(EntityKind.ESCROW, ESCROW).entity.delivery_history) == 1


def test_replaying_the_whole_range_changes_nothing(store, ingestor, history):
    board, escrow = scenario_a_events()
    ingestor.apply_all(_deltas(history, store, board + escrow))
    before = store.stats()["counts"]
    job_before = store.get(EntityKind.JOB, "1").entity.to_dict()

    counts = ingestor.apply_all(_deltas(history, store, board + escrow))

    assert counts == {SKIP_DUPLICATE: 6}
    assert store.stats()["counts"] == before
    assert store.get(EntityKind.JOB, "1").entity.to_dict() == job_before


def test_event_order_does_not_change_final_state(history):
    board, escrow = scenario_a_events()
    scratch = CacheStore.open(":memory:")
    try:
        deltas = _deltas(history, scratch, board + escrow)
    finally:
        scratch.close()
    # group per log so each permutation reorders whole events
    per_event = [list(group) for _, group in itertools.groupby(deltas, key=lambda d: d.position)]
    assert len(per_event) == 5

    finals = []
    for order in itertools.permutations(per_event):
        store = CacheStore.open(":memory:")
        try:
            EventIngestor(store).apply_all(d for group in order for d in group)
            job = store.get(EntityKind.JOB, "1")
            escrow_record = store.get(EntityKind.ESCROW, ESCROW)
            finals.append((
                job.entity.to_dict(), job.position,
                escrow_record.entity.to_dict(), escrow_record.position,
            ))
        finally:
            store.close()

    assert all(f == finals[0] for f in finals)
    job_state, job_position, escrow_state, escrow_position = finals[0]
    assert job_state["status"] == int(JobStatus.COMPLETED)
    assert job_position == (115, 1)
    assert escrow_state["terminal"] is True
    assert escrow_state["job_id"] == 1
    assert len(escrow_state["delivery_history"]) == 1
    assert escrow_position == (115, 0)


def test_snapshot_order_does_not_change_final_state():
    snapshots = [
        snapshot_delta(EntityKind.JOB, "1", 100, "getJob", job_snapshot(1, JobStatus.OPEN)),
        snapshot_delta(EntityKind.JOB, "1", 105, "getJob", job_snapshot(
            1, JobStatus.HIRED, escrow=ESCROW, freelancer=FREELANCER, updated_block=105)),
        snapshot_delta(EntityKind.JOB, "1", 115, "getJob", job_snapshot(
            1, JobStatus.COMPLETED, escrow=ESCROW, freelancer=FREELANCER, updated_block=115)),
    ]

    finals = []
    for order in itertools.permutations(snapshots):
        store = CacheStore.open(":memory:")
        try:
            EventIngestor(store).apply_all(order)
            record = store.get(EntityKind.JOB, "1")
            finals.append((record.entity.to_dict(), record.position))
        finally:
            store.close()

    assert all(f == finals[0] for f in finals)
    assert finals[0][0]["status"] == int(JobStatus.COMPLETED)


def test_older_delta_is_skipped_as_stale(store, ingestor):
    newer = snapshot_delta(EntityKind.JOB, "1", 120, "getJob", job_snapshot(1, JobStatus.OPEN, updated_block=120))
    older = snapshot_delta(EntityKind.JOB, "1", 110, "getJob", job_snapshot(1, JobStatus.OPEN, updated_block=110))

    assert ingestor.apply(newer).applied
    result = ingestor.apply(older)

    assert result.reason == SKIP_STALE
    assert store.get(EntityKind.JOB, "1").last_applied_block == 120


def test_terminal_escrow_is_never_modified(store, ingestor, history):
    board, escrow = scenario_a_events()
    ingestor.apply_all(_deltas(history, store, board + escrow))
    frozen = store.get(EntityKind.ESCROW, ESCROW)

    late_delivery = make_event("WorkDelivered", {"jobKey": b"\x01" * 32, "uri": "ipfs://v2"}, 130, address=ESCROW)
    late_state = escrow_snapshot(delivered=True, deliveries=[("ipfs://v2", block_ts(130), 1)])
    late_snapshot = snapshot_delta(EntityKind.ESCROW, ESCROW, 140, "escrowState", escrow_snapshot())

    assert ingestor.apply(normalize_event(late_delivery, {(EntityKind.ESCROW, ESCROW): late_state})[0]).reason == SKIP_TERMINAL
    assert ingestor.apply(late_snapshot).reason == SKIP_TERMINAL
    assert store.get(EntityKind.ESCROW, ESCROW) == frozen


def test_reversed_status_is_rejected_and_reported(store, clock):
    seen = []
    ingestor = EventIngestor(store, clock=clock, on_inconsistent=lambda delta, err: seen.append((delta, err)))
    ingestor.apply(snapshot_delta(EntityKind.JOB, "1", 115, "getJob", job_snapshot(
        1, JobStatus.COMPLETED, escrow=ESCROW, freelancer=FREELANCER, updated_block=115)))

    reposted = make_event("JobPosted", {"jobId": 1, "client": FREELANCER, "title": "again"}, 120)
    state = {(EntityKind.JOB, "1"): job_snapshot(1, JobStatus.OPEN, updated_block=120)}
    result = ingestor.apply(normalize_event(reposted, state)[0])

    assert result.reason == SKIP_INCONSISTENT
    assert "COMPLETED -> OPEN" in result.detail
    assert len(seen) == 1
    assert store.get(EntityKind.JOB, "1").entity.status is JobStatus.COMPLETED


def test_unwitnessed_skip_is_rejected(store, ingestor):
    ingestor.apply(snapshot_delta(EntityKind.JOB, "1", 100, "getJob", job_snapshot(1, JobStatus.OPEN)))

    completed = make_event("JobCompleted", {"jobId": 1}, 110)
    state = {(EntityKind.JOB, "1"): job_snapshot(1, JobStatus.COMPLETED, updated_block=110)}
    result = ingestor.apply(normalize_event(completed, state)[0])

    assert result.reason == SKIP_INCONSISTENT
    assert "skips HIRED" in result.detail
    assert store.get(EntityKind.JOB, "1").entity.status is JobStatus.OPEN


def test_witnessed_skip_is_applied(store, ingestor):
    ingestor.apply(snapshot_delta(EntityKind.JOB, "1", 100, "getJob", job_snapshot(1, JobStatus.OPEN)))

    completed = make_event("JobCompleted", {"jobId": 1}, 115)
    state = {(EntityKind.JOB, "1"): job_snapshot(
        1, JobStatus.COMPLETED, escrow=ESCROW, freelancer=FREELANCER, updated_block=115)}

    assert ingestor.apply(normalize_event(completed, state)[0]).applied
    assert store.get(EntityKind.JOB, "1").entity.escrow_address == ESCROW


def test_event_without_state_yields_no_delta():
    posted = make_event("JobPosted", {"jobId": 9}, 100)
    assert normalize_event(posted, {(EntityKind.JOB, "9"): None}) == []
    assert normalize_event(make_event("Unknown", {}, 100), {}) == []


def test_dispute_event_creates_dispute_record(store, ingestor, history):
    board, escrow = scenario_a_events()
    ingestor.apply_all(_deltas(history, store, board[:2] + escrow[:1]))
    raised = make_event(
        "DisputeRaised", {"jobKey": b"\x01" * 32, "reasonURI": "ipfs://why"}, 112,
        address=ESCROW, sender=FREELANCER,
    )
    state = escrow_snapshot(
        delivered=True, disputed=True, deliveries=[("ipfs://delivery-1", block_ts(110), 1)], dispute_uri="ipfs://why",
    )
    state["job_id"] = 1

    counts = ingestor.apply_all(normalize_event(raised, {(EntityKind.ESCROW, ESCROW): state}))

    assert counts == {"applied": 2}
    dispute = store.get(EntityKind.DISPUTE, ESCROW).entity
    assert dispute.disputer_address == FREELANCER
    assert dispute.dispute_reason_uri == "ipfs://why"
    assert dispute.transaction_hash == raised.tx_hash
    assert dispute.job_id == 1
    assert store.get(EntityKind.ESCROW, ESCROW).entity.disputed is True

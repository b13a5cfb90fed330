from __future__ import annotations

import asyncio
import dataclasses

import pytest

from api.read_policy import SOURCE_CACHE, SOURCE_LIVE, SOURCE_STALE, CacheUnavailable, CachedReadService
from ingestion.normalize import snapshot_delta
from ingestion.rpc.errors import AttemptFailure, RpcExhausted
from lifecycle.models import Escrow, EntityKind, FreelancerProfile, Job, JobStatus, Proposal
from storage.records import CacheRecord

from tests.fakes import CLIENT, ESCROW, FREELANCER, escrow_snapshot, job_snapshot

EXHAUSTED = RpcExhausted([AttemptFailure(1, "https://rpc-a.example", "timeout", "timed out")])


def _cache_job(store, clock, status=JobStatus.OPEN, title="cached", escrow=None):
    store.put(CacheRecord(
        kind=EntityKind.JOB,
        entity=Job(job_id=1, status=status, title=title, escrow_address=escrow),
        synced_at=clock(),
        last_applied_block=100,
        last_applied_log_index=0,
    ))


@pytest.fixture
def service(store, chain, config, clock):
    return CachedReadService(store.reader(), chain, config, clock=clock)


def test_fresh_hit_is_served_from_cache(store, chain, clock, service):
    _cache_job(store, clock)
    clock.advance(299)

    result = asyncio.run(service.get_job(1))

    assert result.source == SOURCE_CACHE
    assert result.entity.title == "cached"
    assert chain.calls == []


def test_stale_record_falls_through_to_live_without_write_back(store, chain, clock, service):
    _cache_job(store, clock)
    clock.advance(300)
    chain.jobs[1] = job_snapshot(1, JobStatus.HIRED, escrow=ESCROW, freelancer=FREELANCER, updated_block=105)

    result = asyncio.run(service.get_job(1))

    assert result.source == SOURCE_LIVE
    assert result.entity.status is JobStatus.HIRED
    assert store.get(EntityKind.JOB, "1").entity.title == "cached"


def test_miss_reads_live(chain, service):
    chain.jobs[1] = job_snapshot(1, JobStatus.OPEN)

    result = asyncio.run(service.get_job(1))

    assert result.source == SOURCE_LIVE
    assert result.to_dict()["data"]["job_id"] == 1


def test_missing_entity_returns_none(service):
    assert asyncio.run(service.get_job(99)) is None


def test_live_failure_serves_stale_within_grace(store, chain, clock, service):
    _cache_job(store, clock)
    clock.advance(800)
    chain.read_error = EXHAUSTED

    result = asyncio.run(service.get_job(1))

    assert result.source == SOURCE_STALE
    assert result.entity.title == "cached"


def test_live_failure_beyond_grace_is_unavailable(store, chain, clock, service):
    _cache_job(store, clock)
    clock.advance(901)
    chain.read_error = EXHAUSTED

    with pytest.raises(CacheUnavailable):
        asyncio.run(service.get_job(1))


def test_live_failure_on_miss_is_unavailable(chain, service):
    chain.read_error = EXHAUSTED
    with pytest.raises(CacheUnavailable) as exc_info:
        asyncio.run(service.get_job(1))
    assert exc_info.value.kind is EntityKind.JOB


def test_kill_switch_forces_live_reads(store, chain, config, clock):
    service = CachedReadService(
        store.reader(), chain, dataclasses.replace(config, enable_db_cache=False), clock=clock,
    )
    _cache_job(store, clock)
    chain.jobs[1] = job_snapshot(1, JobStatus.OPEN)

    assert asyncio.run(service.get_job(1)).source == SOURCE_LIVE

    chain.read_error = EXHAUSTED
    with pytest.raises(CacheUnavailable):
        asyncio.run(service.get_job(1))


def test_invalid_cached_payload_is_not_served(store, chain, clock, service):
    # OPEN jobs never carry an escrow
    _cache_job(store, clock, status=JobStatus.OPEN, escrow=ESCROW)
    chain.jobs[1] = job_snapshot(1, JobStatus.OPEN)

    result = asyncio.run(service.get_job(1))

    assert result.source == SOURCE_LIVE
    assert result.entity.escrow_address is None


def test_live_escrow_keeps_cached_job_id(store, chain, clock, service, ingestor):
    ingestor.apply(snapshot_delta(EntityKind.ESCROW, ESCROW, 105, "escrowState", {**escrow_snapshot(), "job_id": 1}))
    clock.advance(3600)
    chain.escrows[ESCROW] = escrow_snapshot(delivered=True, deliveries=[("ipfs://d", 1, 1)])

    result = asyncio.run(service.get_escrow(ESCROW.upper().replace("0X", "0x")))

    assert result.source == SOURCE_LIVE
    assert result.entity.job_id == 1
    assert result.entity.delivered is True


def _put(store, kind, entity, synced_at):
    store.put(CacheRecord(kind=kind, entity=entity, synced_at=synced_at, last_applied_block=100, last_applied_log_index=0))


def test_job_list_from_fresh_cache_is_filtered_and_newest_first(store, chain, clock, service):
    _put(store, EntityKind.JOB, Job(job_id=1, status=JobStatus.OPEN, client=CLIENT), clock())
    _put(store, EntityKind.JOB, Job(job_id=2, status=JobStatus.OPEN, client=FREELANCER), clock())
    _put(store, EntityKind.JOB, Job(job_id=3, status=JobStatus.CANCELLED, client=CLIENT), clock())

    everything = asyncio.run(service.list_jobs())
    open_for_client = asyncio.run(service.list_jobs(status=JobStatus.OPEN, client=CLIENT.upper().replace("0X", "0x")))
    second_page = asyncio.run(service.list_jobs(limit=2, offset=2))

    assert everything.source == SOURCE_CACHE
    assert [j.job_id for j in everything.entities] == [3, 2, 1]
    assert [j.job_id for j in open_for_client.entities] == [1]
    assert [j.job_id for j in second_page.entities] == [1]
    assert chain.calls == []


def test_empty_job_list_falls_back_to_chain(chain, service):
    chain.next_job_id = 4
    chain.jobs[1] = job_snapshot(1, JobStatus.OPEN)
    chain.jobs[3] = job_snapshot(3, JobStatus.HIRED, escrow=ESCROW, freelancer=FREELANCER, updated_block=105)

    result = asyncio.run(service.list_jobs())
    hired = asyncio.run(service.list_jobs(status=JobStatus.HIRED))

    assert result.source == SOURCE_LIVE
    assert [j.job_id for j in result.entities] == [3, 1]
    assert [j.job_id for j in hired.entities] == [3]
    assert result.to_dict()["count"] == 2


def test_job_list_with_one_stale_record_reads_live(store, chain, clock, service):
    _put(store, EntityKind.JOB, Job(job_id=1, status=JobStatus.OPEN), clock() - 400)
    _put(store, EntityKind.JOB, Job(job_id=2, status=JobStatus.OPEN), clock())
    chain.next_job_id = 3
    chain.jobs[1] = job_snapshot(1, JobStatus.OPEN)
    chain.jobs[2] = job_snapshot(2, JobStatus.OPEN)

    assert asyncio.run(service.list_jobs()).source == SOURCE_LIVE

    chain.read_error = EXHAUSTED
    assert asyncio.run(service.list_jobs()).source == SOURCE_STALE

    clock.advance(600)
    with pytest.raises(CacheUnavailable):
        asyncio.run(service.list_jobs())


def test_job_proposals_cache_first_then_live(store, chain, clock, service):
    _put(store, EntityKind.PROPOSAL, Proposal(job_id=7, freelancer=FREELANCER, applied_at=5), clock())
    _put(store, EntityKind.PROPOSAL, Proposal(job_id=7, freelancer=CLIENT, applied_at=9), clock())

    cached = asyncio.run(service.list_job_proposals(7))
    assert cached.source == SOURCE_CACHE
    assert [p.freelancer for p in cached.entities] == [CLIENT, FREELANCER]

    chain.proposals[(8, FREELANCER)] = {"proposal_uri": None, "applied_at": 3, "bid_amount": 10, "delivery_days": 2}
    live = asyncio.run(service.list_job_proposals(8))
    assert live.source == SOURCE_LIVE
    assert live.entities[0].bid_amount == 10


def test_freelancer_proposals_are_cache_only(store, chain, config, clock, service):
    _put(store, EntityKind.PROPOSAL, Proposal(job_id=7, freelancer=FREELANCER, applied_at=5), clock() - 400)

    result = asyncio.run(service.list_freelancer_proposals(FREELANCER))
    assert result.source == SOURCE_STALE
    assert [p.job_id for p in result.entities] == [7]
    assert chain.calls == []

    disabled = CachedReadService(store.reader(), chain, dataclasses.replace(config, enable_db_cache=False), clock=clock)
    with pytest.raises(CacheUnavailable):
        asyncio.run(disabled.list_freelancer_proposals(FREELANCER))


def test_profiles_sorted_by_rating(store, clock, service):
    _put(store, EntityKind.PROFILE, FreelancerProfile(wallet=CLIENT, average_rating=None, is_active=True), clock())
    _put(store, EntityKind.PROFILE, FreelancerProfile(wallet=FREELANCER, average_rating=4.8, is_active=True), clock())
    _put(store, EntityKind.PROFILE, FreelancerProfile(wallet=ESCROW, average_rating=3.1, is_active=False), clock())

    assert [p.wallet for p in asyncio.run(service.list_profiles()).entities] == [FREELANCER, ESCROW, CLIENT]
    assert [p.wallet for p in asyncio.run(service.list_profiles(is_active=True, limit=1)).entities] == [FREELANCER]


def test_job_escrow_by_cached_job_id_or_through_the_job(store, chain, clock, service):
    _put(store, EntityKind.ESCROW, Escrow(address=ESCROW, job_id=1), clock())
    cached = asyncio.run(service.get_job_escrow(1))
    assert cached.source == SOURCE_CACHE
    assert cached.entity.address == ESCROW

    other = "0x" + "e6" * 20
    chain.jobs[2] = job_snapshot(2, JobStatus.HIRED, escrow=other, freelancer=FREELANCER, updated_block=105)
    chain.escrows[other] = escrow_snapshot()
    live = asyncio.run(service.get_job_escrow(2))
    assert live.source == SOURCE_LIVE
    assert live.entity.address == other
    assert live.entity.job_id == 2

    chain.jobs[3] = job_snapshot(3, JobStatus.OPEN)
    assert asyncio.run(service.get_job_escrow(3)) is None

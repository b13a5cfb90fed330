from __future__ import annotations

import asyncio

from lifecycle.models import EntityKind, JobStatus
from sync.collector import DeltaCollector
from sync.subscriber import SyncSubscriber

from tests.fakes import job_snapshot, scenario_a_events


def _subscriber(store, chain, ingestor, **kwargs):
    return SyncSubscriber(
        chain, DeltaCollector(chain, store.reader()), ingestor, store.reader(),
        contracts=("JobBoard",), **kwargs,
    )


def test_starts_from_lowest_checkpoint_and_never_writes_it(store, chain, ingestor):
    board, _ = scenario_a_events()
    chain.board_events = board[:1]
    chain.jobs[1] = job_snapshot(1, JobStatus.OPEN)
    chain.head = 120
    store.advance_checkpoint("JobBoard", 90, now=0.0)

    applied = asyncio.run(_subscriber(store, chain, ingestor).poll_once())

    assert applied == 2
    assert store.get(EntityKind.JOB, "1").entity.status is JobStatus.OPEN
    assert store.get_sync_status("JobBoard").last_synced_block == 90


def test_without_checkpoint_starts_at_head(store, chain, ingestor):
    board, _ = scenario_a_events()
    chain.board_events = board[:1]
    chain.jobs[1] = job_snapshot(1, JobStatus.OPEN)
    chain.head = 120
    subscriber = _subscriber(store, chain, ingestor)

    assert asyncio.run(subscriber.poll_once()) == 0
    assert subscriber.cursor == 120
    assert store.get(EntityKind.JOB, "1") is None


def test_cursor_advances_between_polls(store, chain, ingestor):
    chain.head = 100
    subscriber = _subscriber(store, chain, ingestor, start_block=100)

    assert asyncio.run(subscriber.poll_once()) == 0

    board, _ = scenario_a_events()
    chain.board_events = board[:1]
    chain.jobs[1] = job_snapshot(1, JobStatus.OPEN)
    chain.head = 101
    # JobPosted sits at block 100, already behind the cursor
    assert asyncio.run(subscriber.poll_once()) == 0
    assert subscriber.cursor == 101


def test_loop_runs_until_stopped(store, chain, ingestor):
    chain.head = 10
    subscriber = _subscriber(store, chain, ingestor, poll_interval_sec=0.01, start_block=10)

    async def run():
        task = asyncio.create_task(subscriber.start(install_signal_handlers=False))
        await asyncio.sleep(0.05)
        assert subscriber.is_running
        await subscriber.stop()
        await asyncio.wait_for(task, timeout=2)

    asyncio.run(run())
    assert not subscriber.is_running
    assert chain.calls.count("block_number") >= 1

"""Shared fixtures: in-memory cache store, config and fake chain."""
from __future__ import annotations

import pytest

from config.settings import SyncConfig
from ingestion.ingestor import EventIngestor
from storage.cache_store import CacheStore
from sync.collector import DeltaCollector
from sync.reconciler import ReconciliationScheduler

from tests.fakes import JOB_BOARD, FakeChainReader, FakeClock


@pytest.fixture
def store():
    s = CacheStore.open(":memory:")
    yield s
    s.close()


@pytest.fixture
def config():
    return SyncConfig(
        rpc_urls=("https://rpc-a.example", "https://rpc-b.example"),
        job_board_address=JOB_BOARD,
        cron_secret="s3cret",
        rpc_backoff_ms=0,
        tracked_contracts=("JobBoard", "JobEscrow"),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain():
    return FakeChainReader(head=0)


@pytest.fixture
def ingestor(store, clock):
    return EventIngestor(store, clock=clock)


@pytest.fixture
def scheduler(store, chain, ingestor, config, clock):
    collector = DeltaCollector(chain, store.reader())
    return ReconciliationScheduler(store, chain, collector, ingestor, config, owner="test-owner", clock=clock)

"""sync/lease.py

One reconciliation run per contract at a time.

Two layers: an in-process set (a cron and a manual trigger hitting the same
worker) and the sync_status row lease (separate instances sharing the
store). A crashed holder's row lease expires after lease_ttl_sec; a live
holder renews it while it works (renew), so a long catch-up keeps it.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional, Set

from storage.cache_store import CacheStore
from sync.errors import LeaseLost, ReconciliationInProgress

logger = logging.getLogger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class RunGuard:
    def __init__(self, store: CacheStore, ttl_sec: float, owner: Optional[str] = None):
        self._store = store
        self._ttl_sec = ttl_sec
        self.owner = owner or default_owner()
        self._in_flight: Set[str] = set()

    def is_running(self, contract_name: str) -> bool:
        return contract_name in self._in_flight

    @contextmanager
    def hold(self, contract_name: str) -> Iterator[None]:
        if contract_name in self._in_flight:
            raise ReconciliationInProgress(contract_name, "run already in flight in this process")
        self._in_flight.add(contract_name)
        try:
            if not self._store.acquire_lease(contract_name, self.owner, self._ttl_sec):
                status = self._store.get_sync_status(contract_name)
                holder = status.lease_owner if status else None
                raise ReconciliationInProgress(contract_name, f"lease held by {holder}")
            logger.debug(f"[lease] {self.owner} acquired {contract_name}")
            try:
                yield
            finally:
                self._store.release_lease(contract_name, self.owner)
        finally:
            self._in_flight.discard(contract_name)

    def renew(self, contract_name: str) -> None:
        """
        Extend the row lease by another ttl.

        Raises:
            LeaseLost: the lease expired and another owner took it
        """
        if not self._store.renew_lease(contract_name, self.owner, self._ttl_sec):
            status = self._store.get_sync_status(contract_name)
            holder = status.lease_owner if status else None
            raise LeaseLost(contract_name, f"lease lost to {holder}")
        logger.debug(f"[lease] {self.owner} renewed {contract_name}")

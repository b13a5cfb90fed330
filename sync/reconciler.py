"""
Reconciliation Scheduler

Single-shot catch-up from the stored checkpoint to the chain head, run per
tracked contract and triggered externally (cron endpoint, script, manual).

HARD RULES:
- Checkpoint advances only after every delta of the range was applied
- Any failure after the lease is taken: checkpoint kept, sync_errors += 1,
  last_error stored, ReconciliationPartialFailure raised
- One run per contract (in-process flag + sync_status row lease, renewed
  after every collected step)
- Replaying a range is safe: ingestor apply is idempotent and order-aware
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from config.settings import SyncConfig
from ingestion.ingestor import EventIngestor
from ingestion.rpc.client import ChainReader
from ingestion.rpc.errors import RpcExhausted
from monitoring.alerts import (
    ALERT_CRITICAL,
    ALERT_ERROR,
    compose_reconcile_failure_alert,
    compose_rpc_exhausted_alert,
)
from storage.cache_store import CacheStore
from sync.collector import DeltaCollector
from sync.errors import ReconciliationInProgress, ReconciliationPartialFailure
from sync.lease import RunGuard

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """
    Attributes:
        contract_name: Tracked contract
        from_block: Checkpoint the run started from
        last_synced_block: Checkpoint after the run
        current_block: Chain head observed by the run
        duration_ms: Wall time
        events / deltas: Volume of the range
        applied: Counts per AppliedResult status/reason
    """
    contract_name: str
    from_block: int
    last_synced_block: int
    current_block: int
    duration_ms: int
    events: int = 0
    deltas: int = 0
    applied: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contractName": self.contract_name,
            "fromBlock": self.from_block,
            "lastSyncedBlock": self.last_synced_block,
            "currentBlock": self.current_block,
            "duration": self.duration_ms,
            "events": self.events,
            "deltas": self.deltas,
            "applied": dict(self.applied),
        }


class ReconciliationScheduler:
    """
    Usage:
        scheduler = ReconciliationScheduler(store, reader, collector, ingestor, config)
        result = await scheduler.reconcile("JobBoard")
    """

    def __init__(
        self,
        store: CacheStore,
        reader: ChainReader,
        collector: DeltaCollector,
        ingestor: EventIngestor,
        config: SyncConfig,
        alert_callback: Optional[Callable[[str, str], Any]] = None,
        owner: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: Writer interface (checkpoint + lease)
            reader: Chain reader (current block)
            collector: Delta derivation for a range
            ingestor: Applies deltas
            config: Start block, lease TTL, tracked contracts
            alert_callback: (text, level) sink, e.g. AlertDispatcher.dispatch
            owner: Lease owner id (defaults to host:pid:random)
            clock: Injected for tests
        """
        self.store = store
        self.reader = reader
        self.collector = collector
        self.ingestor = ingestor
        self.config = config
        self.alert_callback = alert_callback
        self.clock = clock
        self.guard = RunGuard(store, ttl_sec=config.lease_ttl_sec, owner=owner)

    async def reconcile(self, contract_name: str) -> ReconcileResult:
        """
        Catch up one contract.

        Raises:
            ReconciliationInProgress: another run holds the contract
            ReconciliationPartialFailure: run failed, checkpoint untouched
        """
        with self.guard.hold(contract_name):
            return await self._run(contract_name)

    async def reconcile_all(self) -> List[Any]:
        """
        Run every tracked contract in order; a failed or already running
        contract does not stop the rest.

        Returns:
            ReconcileResult, ReconciliationPartialFailure or
            ReconciliationInProgress per contract
        """
        outcomes: List[Any] = []
        for name in self.config.tracked_contracts:
            try:
                outcomes.append(await self.reconcile(name))
            except ReconciliationInProgress as e:
                logger.info(f"[reconciler] {name}: skipped, {e.message}")
                outcomes.append(e)
            except ReconciliationPartialFailure as e:
                outcomes.append(e)
        return outcomes

    async def _run(self, contract_name: str) -> ReconcileResult:
        started = self.clock()
        status = self.store.get_sync_status(contract_name)
        checkpoint = status.last_synced_block if status is not None else 0
        from_block = max(checkpoint, self.config.start_block)

        logger.info(f"[reconciler] {contract_name}: starting from block {from_block}")
        try:
            current_block = await self.reader.get_block_number()
            if current_block < from_block:
                # lagging provider; nothing to do and the checkpoint never moves back
                logger.warning(f"[reconciler] {contract_name}: head {current_block} behind checkpoint {from_block}")
                batch = None
                applied: Dict[str, int] = {}
            else:
                batch = await self.collector.collect(
                    contract_name, from_block, current_block, heartbeat=lambda: self.guard.renew(contract_name),
                )
                self.guard.renew(contract_name)
                applied = self.ingestor.apply_all(batch.ordered())
        except Exception as e:
            raise self._failure(contract_name, e) from e

        new_status = self.store.advance_checkpoint(contract_name, current_block, now=self.clock())
        duration_ms = int((self.clock() - started) * 1000)
        result = ReconcileResult(
            contract_name=contract_name,
            from_block=from_block,
            last_synced_block=new_status.last_synced_block,
            current_block=current_block,
            duration_ms=duration_ms,
            events=batch.events if batch else 0,
            deltas=len(batch.deltas) if batch else 0,
            applied=applied,
        )
        logger.info(
            f"[reconciler] {contract_name}: synced to {result.last_synced_block} "
            f"({result.events} events, {result.deltas} deltas, {applied}) in {duration_ms}ms"
        )
        return result

    def _failure(self, contract_name: str, exc: Exception) -> ReconciliationPartialFailure:
        error = f"{type(exc).__name__}: {exc}"
        status = self.store.record_sync_failure(contract_name, error)
        logger.error(
            f"[reconciler] {contract_name}: run failed, checkpoint kept at "
            f"{status.last_synced_block} (errors={status.sync_errors}): {error}"
        )
        if self.alert_callback is not None:
            text = compose_reconcile_failure_alert(contract_name, error, status.to_dict())
            level = ALERT_ERROR
            if isinstance(exc, RpcExhausted):
                text += "\n" + compose_rpc_exhausted_alert(f"reconcile {contract_name}", len(exc.failures), error)
                level = ALERT_CRITICAL
            try:
                self.alert_callback(text, level)
            except Exception as alert_err:
                logger.error(f"[reconciler] alert delivery failed: {alert_err}")
        return ReconciliationPartialFailure(contract_name, error, status.to_dict())

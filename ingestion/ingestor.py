"""ingestion/ingestor.py

Event Ingestor: idempotent, order-aware application of deltas to the cache.

HARD RULES:
- Check order: duplicate key -> terminal escrow -> stale position -> lifecycle merge
- An Applied result writes exactly one record (plus its idempotency key)
- Never touches sync_status; checkpoints belong to the reconciler
- No lock: correctness comes from the monotonic position comparison
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from ingestion.normalize import Delta
from lifecycle.interpreter import merge
from lifecycle.models import EntityKind
from lifecycle.state_machine import InconsistentTransition
from storage.cache_store import CacheStore
from storage.records import CacheRecord

logger = logging.getLogger(__name__)

APPLIED = "applied"
SKIP_DUPLICATE = "duplicate"
SKIP_TERMINAL = "terminal"
SKIP_STALE = "stale"
SKIP_INCONSISTENT = "inconsistent"


@dataclass(frozen=True)
class AppliedResult:
    """Outcome of Ingestor.apply(); reason is None when applied."""
    status: str
    reason: Optional[str] = None
    record: Optional[CacheRecord] = None
    detail: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.status == APPLIED

    @classmethod
    def ok(cls, record: CacheRecord) -> "AppliedResult":
        return cls(status=APPLIED, record=record)

    @classmethod
    def skipped(cls, reason: str, detail: Optional[str] = None) -> "AppliedResult":
        return cls(status="skipped", reason=reason, detail=detail)


class EventIngestor:
    """
    Applies deltas produced by ingestion.normalize / the delta collector.

    Usage:
        ingestor = EventIngestor(store)
        batch = await collector.collect("JobBoard", 100, 200)
        counts = ingestor.apply_all(batch.ordered())
    """

    def __init__(
        self,
        store: CacheStore,
        clock: Callable[[], float] = time.time,
        on_inconsistent: Optional[Callable[[Delta, InconsistentTransition], None]] = None,
    ):
        """
        Args:
            store: Writer interface of the cache
            clock: synced_at source
            on_inconsistent: Optional hook (alerts) for data-integrity warnings
        """
        self._store = store
        self._clock = clock
        self._on_inconsistent = on_inconsistent

    def apply(self, delta: Delta) -> AppliedResult:
        key = delta.idempotency_key
        if self._store.has_applied(key):
            logger.debug(f"[ingestor] duplicate {delta.describe()}")
            return AppliedResult.skipped(SKIP_DUPLICATE)

        current = self._store.get(delta.kind, delta.entity_id)

        if current is not None and delta.kind is EntityKind.ESCROW and current.entity.terminal:
            logger.info(f"[ingestor] terminal escrow, skipping {delta.describe()}")
            return AppliedResult.skipped(SKIP_TERMINAL)

        if current is not None and delta.position <= current.position:
            logger.info(
                f"[ingestor] stale {delta.describe()} (cached at "
                f"{current.last_applied_block}/{current.last_applied_log_index})"
            )
            return AppliedResult.skipped(SKIP_STALE)

        try:
            entity = merge(
                delta.kind,
                delta.entity_id,
                current.entity if current is not None else None,
                delta.fields,
            )
        except InconsistentTransition as e:
            logger.warning(f"[ingestor] inconsistent {delta.describe()}: {e.message}; keeping cached value")
            if self._on_inconsistent is not None:
                self._on_inconsistent(delta, e)
            return AppliedResult.skipped(SKIP_INCONSISTENT, detail=e.message)

        record = CacheRecord(
            kind=delta.kind,
            entity=entity,
            synced_at=self._clock(),
            last_applied_block=delta.block_number,
            last_applied_log_index=delta.log_index,
        )
        self._store.put(record, idempotency_key=key)
        logger.debug(f"[ingestor] applied {delta.describe()}")
        return AppliedResult.ok(record)

    def apply_all(self, deltas: Iterable[Delta]) -> Dict[str, int]:
        """Apply in order; returns counts per status/reason."""
        counts: Dict[str, int] = {}
        for delta in deltas:
            result = self.apply(delta)
            name = result.reason or result.status
            counts[name] = counts.get(name, 0) + 1
        return counts


def sort_deltas(deltas: Iterable[Delta]) -> List[Delta]:
    """Block order, then log index; snapshots last within a block."""
    return sorted(deltas, key=lambda d: d.position)

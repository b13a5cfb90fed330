"""storage/records.py

Cache record wrappers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from lifecycle.models import EntityKind


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class CacheRecord:
    """
    Cached entity plus sync bookkeeping.

    Attributes:
        kind: Entity kind
        entity: Domain entity (lifecycle.models)
        synced_at: Unix seconds of the write
        last_applied_block / last_applied_log_index: Position of the delta
            that produced this record (ordering guard input)
    """
    kind: EntityKind
    entity: Any
    synced_at: float
    last_applied_block: int
    last_applied_log_index: int

    @property
    def entity_id(self) -> str:
        return self.entity.entity_id

    @property
    def position(self) -> Tuple[int, int]:
        return (self.last_applied_block, self.last_applied_log_index)

    def age_sec(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return now - self.synced_at

    def is_fresh(self, ttl_sec: float, now: Optional[float] = None) -> bool:
        return self.age_sec(now) < ttl_sec

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entity": self.entity.to_dict(),
            "synced_at": _iso(self.synced_at),
            "last_applied_block": self.last_applied_block,
            "last_applied_log_index": self.last_applied_log_index,
        }


def is_fresh(record: Optional[CacheRecord], ttl_sec: float, now: Optional[float] = None) -> bool:
    """now - syncedAt < TTL; a miss is never fresh."""
    return record is not None and record.is_fresh(ttl_sec, now)


@dataclass
class SyncStatus:
    """Per-contract reconciliation checkpoint."""
    contract_name: str
    last_synced_block: int = 0
    last_synced_at: Optional[float] = None
    sync_errors: int = 0
    last_error: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_name": self.contract_name,
            "last_synced_block": self.last_synced_block,
            "last_synced_at": _iso(self.last_synced_at),
            "sync_errors": self.sync_errors,
            "last_error": self.last_error,
            "lease_owner": self.lease_owner,
            "lease_expires_at": _iso(self.lease_expires_at),
        }

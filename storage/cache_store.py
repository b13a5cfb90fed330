"""storage/cache_store.py

DuckDB-backed cache of chain entities.

Two interfaces over one connection:
- CacheReader: read-only, handed to API routes and anything outside sync
- CacheStore: the writer, constructed only by the sync pipeline

CacheStore.reader() returns a CacheReader sharing the connection, so read
paths never hold an object with put().
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import duckdb

from lifecycle.models import EntityKind, JobStatus, entity_from_dict
from storage.records import CacheRecord, SyncStatus
from storage.schema import PROJECTIONS, all_ddl, project

logger = logging.getLogger(__name__)

_SYNC_STATUS_COLUMNS = (
    "contract_name, last_synced_block, last_synced_at, sync_errors, "
    "last_error, lease_owner, lease_expires_at"
)


class CacheReader:
    """Read-only view of the cache."""

    def __init__(self, con: duckdb.DuckDBPyConnection, lock: threading.RLock):
        self._con = con
        self._lock = lock

    def _fetchall(self, sql: str, params: Optional[List[Any]] = None) -> List[tuple]:
        with self._lock:
            return self._con.execute(sql, params or []).fetchall()

    @staticmethod
    def _to_record(kind: EntityKind, row: tuple) -> CacheRecord:
        payload, block, log_index, synced_at = row
        return CacheRecord(
            kind=kind,
            entity=entity_from_dict(kind, json.loads(payload)),
            synced_at=float(synced_at),
            last_applied_block=int(block),
            last_applied_log_index=int(log_index),
        )

    def get(self, kind: EntityKind, entity_id: str) -> Optional[CacheRecord]:
        """Cached record or None (miss)."""
        rows = self._fetchall(
            f"SELECT payload, last_applied_block, last_applied_log_index, synced_at "
            f"FROM {kind.value} WHERE entity_id = ?",
            [str(entity_id)],
        )
        return self._to_record(kind, rows[0]) if rows else None

    def list(
        self,
        kind: EntityKind,
        where: str = "",
        params: Optional[List[Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        order_by: str = "entity_id",
    ) -> List[CacheRecord]:
        sql = (
            f"SELECT payload, last_applied_block, last_applied_log_index, synced_at "
            f"FROM {kind.value}"
        )
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        if offset:
            sql += f" OFFSET {int(offset)}"
        return [self._to_record(kind, r) for r in self._fetchall(sql, params)]

    def list_jobs(self, statuses: Iterable[JobStatus]) -> List[CacheRecord]:
        values = [int(s) for s in statuses]
        if not values:
            return []
        marks = ", ".join("?" for _ in values)
        return self.list(EntityKind.JOB, f"status IN ({marks})", values)

    def query_jobs(
        self,
        status: Optional[JobStatus] = None,
        client: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[CacheRecord]:
        """Newest jobs first, optionally filtered by status and client address."""
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(int(status))
        if client:
            clauses.append("client_address = ?")
            params.append(client.lower())
        return self.list(
            EntityKind.JOB, " AND ".join(clauses), params,
            limit=limit, offset=offset, order_by="job_id DESC",
        )

    def list_proposals(self, job_id: Optional[int] = None, freelancer: Optional[str] = None) -> List[CacheRecord]:
        """Proposals of one job or one freelancer, latest application first."""
        if job_id is not None:
            records = self.list(EntityKind.PROPOSAL, "job_id = ?", [int(job_id)])
        elif freelancer:
            records = self.list(EntityKind.PROPOSAL, "freelancer_address = ?", [freelancer.lower()])
        else:
            raise ValueError("job_id or freelancer is required")
        return sorted(records, key=lambda r: r.entity.applied_at, reverse=True)

    def escrow_for_job(self, job_id: int) -> Optional[CacheRecord]:
        rows = self.list(EntityKind.ESCROW, "job_id = ?", [int(job_id)], limit=1)
        return rows[0] if rows else None

    def list_profiles(self, is_active: Optional[bool] = None, limit: Optional[int] = None) -> List[CacheRecord]:
        """Highest rated first; unrated profiles last."""
        where, params = ("is_active = ?", [bool(is_active)]) if is_active is not None else ("", [])
        records = self.list(EntityKind.PROFILE, where, params)
        records.sort(key=lambda r: (r.entity.average_rating is None, -(r.entity.average_rating or 0)))
        return records[:limit] if limit is not None else records

    def list_open_escrows(self) -> List[CacheRecord]:
        return self.list(EntityKind.ESCROW, "terminal = false")

    def list_undecided_offers(self) -> List[CacheRecord]:
        return self.list(EntityKind.DIRECT_OFFER, "decided = false")

    def has_applied(self, idempotency_key: str) -> bool:
        rows = self._fetchall(
            "SELECT 1 FROM applied_keys WHERE idempotency_key = ?",
            [idempotency_key],
        )
        return bool(rows)

    def get_sync_status(self, contract_name: str) -> Optional[SyncStatus]:
        rows = self._fetchall(
            f"SELECT {_SYNC_STATUS_COLUMNS} FROM sync_status WHERE contract_name = ?",
            [contract_name],
        )
        return SyncStatus(*rows[0]) if rows else None

    def all_sync_status(self) -> List[SyncStatus]:
        rows = self._fetchall(f"SELECT {_SYNC_STATUS_COLUMNS} FROM sync_status ORDER BY contract_name")
        return [SyncStatus(*r) for r in rows]

    def stats(self) -> Dict[str, Any]:
        """Row counts per entity table and the checkpoint of every contract."""
        counts = {}
        for kind in EntityKind:
            counts[kind.value] = self._fetchall(f"SELECT count(*) FROM {kind.value}")[0][0]
        return {
            "counts": counts,
            "applied_keys": self._fetchall("SELECT count(*) FROM applied_keys")[0][0],
            "sync_status": {s.contract_name: s.to_dict() for s in self.all_sync_status()},
        }


class CacheStore(CacheReader):
    """
    Single-writer cache store.

    Usage:
        store = CacheStore.open("data/sync_cache.duckdb")
        store.put(record, idempotency_key="0xabc:3:jobs:7")
        api_reader = store.reader()
    """

    def __init__(self, con: duckdb.DuckDBPyConnection):
        super().__init__(con, threading.RLock())
        with self._lock:
            for ddl in all_ddl():
                self._con.execute(ddl)

    @classmethod
    def open(cls, path: str = ":memory:") -> "CacheStore":
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"[cache] Opening DuckDB cache at {path}")
        return cls(duckdb.connect(database=path))

    def reader(self) -> CacheReader:
        return CacheReader(self._con, self._lock)

    def close(self) -> None:
        with self._lock:
            self._con.close()

    # -- entity writes ----------------------------------------------------

    def put(self, record: CacheRecord, idempotency_key: Optional[str] = None) -> None:
        """
        Upsert one record and, when given, its idempotency key in one transaction.
        """
        kind = record.kind
        proj_cols = [name for name, _ in PROJECTIONS[kind]]
        cols = ["entity_id"] + proj_cols + ["payload", "last_applied_block", "last_applied_log_index", "synced_at"]
        values = (
            [record.entity_id]
            + list(project(kind, record.entity))
            + [
                json.dumps(record.entity.to_dict(), sort_keys=True),
                record.last_applied_block,
                record.last_applied_log_index,
                record.synced_at,
            ]
        )
        marks = ", ".join("?" for _ in cols)

        with self._lock:
            self._con.begin()
            try:
                self._con.execute(
                    f"INSERT OR REPLACE INTO {kind.value} ({', '.join(cols)}) VALUES ({marks})",
                    values,
                )
                if idempotency_key is not None:
                    self._con.execute(
                        "INSERT OR IGNORE INTO applied_keys VALUES (?, ?, ?, ?)",
                        [idempotency_key, kind.value, record.entity_id, record.synced_at],
                    )
                self._con.commit()
            except Exception:
                self._con.rollback()
                raise

    # -- checkpoint / lease -----------------------------------------------

    def _ensure_status_row(self, contract_name: str) -> None:
        self._con.execute(
            "INSERT OR IGNORE INTO sync_status (contract_name, last_synced_block, sync_errors) VALUES (?, 0, 0)",
            [contract_name],
        )

    def acquire_lease(self, contract_name: str, owner: str, ttl_sec: float, now: Optional[float] = None) -> bool:
        """
        Take the per-contract run lease unless another owner holds a live one.
        """
        now = time.time() if now is None else now
        with self._lock:
            self._ensure_status_row(contract_name)
            rows = self._con.execute(
                """
                UPDATE sync_status
                SET lease_owner = ?, lease_expires_at = ?
                WHERE contract_name = ?
                  AND (lease_owner IS NULL OR lease_owner = ? OR lease_expires_at IS NULL OR lease_expires_at <= ?)
                RETURNING contract_name
                """,
                [owner, now + ttl_sec, contract_name, owner, now],
            ).fetchall()
        return bool(rows)

    def renew_lease(self, contract_name: str, owner: str, ttl_sec: float, now: Optional[float] = None) -> bool:
        """Push the lease expiry out; False when `owner` no longer holds it."""
        now = time.time() if now is None else now
        with self._lock:
            rows = self._con.execute(
                """
                UPDATE sync_status
                SET lease_expires_at = ?
                WHERE contract_name = ? AND lease_owner = ?
                RETURNING contract_name
                """,
                [now + ttl_sec, contract_name, owner],
            ).fetchall()
        return bool(rows)

    def release_lease(self, contract_name: str, owner: str) -> None:
        with self._lock:
            self._con.execute(
                "UPDATE sync_status SET lease_owner = NULL, lease_expires_at = NULL "
                "WHERE contract_name = ? AND lease_owner = ?",
                [contract_name, owner],
            )

    def advance_checkpoint(self, contract_name: str, block: int, now: Optional[float] = None) -> SyncStatus:
        """Successful run: move the checkpoint forward (never back) and clear errors."""
        now = time.time() if now is None else now
        with self._lock:
            self._ensure_status_row(contract_name)
            self._con.execute(
                """
                UPDATE sync_status
                SET last_synced_block = GREATEST(last_synced_block, ?),
                    last_synced_at = ?,
                    sync_errors = 0,
                    last_error = NULL
                WHERE contract_name = ?
                """,
                [int(block), now, contract_name],
            )
            return self.get_sync_status(contract_name)

    def record_sync_failure(self, contract_name: str, error: str) -> SyncStatus:
        """Failed run: keep the checkpoint, bump the error counter."""
        with self._lock:
            self._ensure_status_row(contract_name)
            self._con.execute(
                "UPDATE sync_status SET sync_errors = sync_errors + 1, last_error = ? WHERE contract_name = ?",
                [error[:2000], contract_name],
            )
            return self.get_sync_status(contract_name)

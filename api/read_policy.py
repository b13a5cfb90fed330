"""api/read_policy.py

Cache freshness policy for reader routes.

Order of preference:
1. fresh, valid cache record
2. live Chain Reader value (never written back; the sync pipeline is the
   only writer)
3. stale cache record within the grace window, when the live read failed
4. CacheUnavailable

ENABLE_DB_CACHE=false skips steps 1 and 3. List reads apply the same order
to the whole list (a cached list is served only when every record in it is
fresh); lists with no on-chain index are cache-only.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config.settings import SyncConfig
from ingestion.rpc.client import ChainReader
from ingestion.rpc.errors import RpcError
from lifecycle.interpreter import check_record, merge, normalize_address
from lifecycle.models import EntityKind, JobStatus, proposal_key
from lifecycle.state_machine import InconsistentTransition
from storage.cache_store import CacheReader
from storage.records import CacheRecord

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_LIVE = "live"
SOURCE_STALE = "stale"


class CacheUnavailable(RuntimeError):
    """Neither a fresh/stale cache value nor a live read is available."""

    def __init__(self, kind: EntityKind, entity_id: str, reason: str):
        super().__init__(f"{kind.value}:{entity_id} unavailable: {reason}")
        self.kind = kind
        self.entity_id = entity_id
        self.reason = reason


@dataclass(frozen=True)
class ReadResult:
    kind: EntityKind
    entity: Any
    source: str
    synced_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "data": self.entity.to_dict(),
            "source": self.source,
            "synced_at": self.synced_at,
        }


@dataclass(frozen=True)
class ListResult:
    kind: EntityKind
    entities: List[Any]
    source: str
    synced_at: Optional[float] = None

    @classmethod
    def from_records(cls, kind: EntityKind, records: List[CacheRecord], source: str) -> "ListResult":
        oldest = min((r.synced_at for r in records), default=None)
        return cls(kind, [r.entity for r in records], source, oldest)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "data": [e.to_dict() for e in self.entities],
            "count": len(self.entities),
            "source": self.source,
            "synced_at": self.synced_at,
        }


class CachedReadService:
    """
    Usage:
        service = CachedReadService(store.reader(), chain_reader, config)
        result = await service.get_job(7)   # None when the job does not exist
    """

    def __init__(
        self,
        cache: CacheReader,
        reader: ChainReader,
        config: SyncConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.reader = reader
        self.config = config
        self.clock = clock

    async def get_job(self, job_id: int) -> Optional[ReadResult]:
        return await self._read(EntityKind.JOB, str(int(job_id)), lambda: self.reader.snapshot_job(int(job_id)))

    async def get_escrow(self, address: str) -> Optional[ReadResult]:
        address = normalize_address(address) or ""

        async def live() -> Optional[Dict[str, Any]]:
            fields = await self.reader.snapshot_escrow(address)
            cached = self.cache.get(EntityKind.ESCROW, address)
            if cached is not None and cached.entity.job_id is not None:
                fields["job_id"] = cached.entity.job_id
            return fields

        return await self._read(EntityKind.ESCROW, address, live)

    def _valid(self, record: CacheRecord) -> bool:
        try:
            check_record(record.kind, record.entity)
        except InconsistentTransition as e:
            logger.warning(f"[read_policy] cached {e.entity} failed validation: {e.message}")
            return False
        return True

    async def _read(
        self,
        kind: EntityKind,
        entity_id: str,
        live: Callable[[], Awaitable[Optional[Dict[str, Any]]]],
    ) -> Optional[ReadResult]:
        now = self.clock()
        record = None
        if self.config.enable_db_cache:
            record = self.cache.get(kind, entity_id)
            if record is not None and not self._valid(record):
                record = None
            if record is not None and record.is_fresh(self.config.cache_ttl_sec, now):
                return ReadResult(kind, record.entity, SOURCE_CACHE, record.synced_at)

        try:
            fields = await live()
        except RpcError as e:
            grace = self.config.cache_ttl_sec + self.config.stale_grace_sec
            if record is not None and record.age_sec(now) < grace:
                logger.warning(
                    f"[read_policy] live read of {kind.value}:{entity_id} failed, serving stale "
                    f"cache ({record.age_sec(now):.0f}s old)"
                )
                return ReadResult(kind, record.entity, SOURCE_STALE, record.synced_at)
            logger.error(f"[read_policy] {kind.value}:{entity_id} unavailable: {e}")
            raise CacheUnavailable(kind, entity_id, str(e)) from e

        if fields is None:
            return None
        entity = merge(kind, entity_id, None, fields)
        return ReadResult(kind, entity, SOURCE_LIVE)

    # -- lists ------------------------------------------------------------

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        client: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ListResult:
        """Newest first. The live fallback walks job ids down from nextJobId - 1 - offset."""
        status = JobStatus(status) if status is not None else None
        client = normalize_address(client) if client else None

        async def live() -> List[Any]:
            top = await self.reader.get_next_job_id() - 1 - offset
            jobs = []
            for job_id in range(top, max(top - limit, -1), -1):
                fields = await self.reader.snapshot_job(job_id)
                if fields is None:
                    continue
                job = merge(EntityKind.JOB, str(job_id), None, fields)
                if status is not None and job.status is not status:
                    continue
                if client and job.client != client:
                    continue
                jobs.append(job)
            return jobs

        return await self._read_list(
            EntityKind.JOB, "jobs",
            lambda: self.cache.query_jobs(status=status, client=client, limit=limit, offset=offset),
            live,
        )

    async def list_job_proposals(self, job_id: int) -> ListResult:
        job_id = int(job_id)

        async def live() -> List[Any]:
            proposals = []
            for freelancer in await self.reader.get_applicants(job_id):
                fields = await self.reader.snapshot_proposal(job_id, freelancer)
                if fields is not None:
                    proposals.append(merge(EntityKind.PROPOSAL, proposal_key(job_id, freelancer), None, fields))
            return sorted(proposals, key=lambda p: p.applied_at, reverse=True)

        return await self._read_list(
            EntityKind.PROPOSAL, f"job {job_id}", lambda: self.cache.list_proposals(job_id=job_id), live,
        )

    async def list_freelancer_proposals(self, freelancer: str) -> ListResult:
        # the contracts have no per-freelancer index, so this list is cache-only
        freelancer = normalize_address(freelancer) or ""
        return await self._read_list(
            EntityKind.PROPOSAL, f"freelancer {freelancer}",
            lambda: self.cache.list_proposals(freelancer=freelancer), None,
        )

    async def list_profiles(self, is_active: Optional[bool] = None, limit: Optional[int] = None) -> ListResult:
        return await self._read_list(
            EntityKind.PROFILE, "profiles", lambda: self.cache.list_profiles(is_active=is_active, limit=limit), None,
        )

    async def get_job_escrow(self, job_id: int) -> Optional[ReadResult]:
        """Escrow of a job: cached by job id, else resolved through the job's escrow address."""
        job_id = int(job_id)
        if self.config.enable_db_cache:
            record = self.cache.escrow_for_job(job_id)
            if record is not None and self._valid(record) and record.is_fresh(self.config.cache_ttl_sec, self.clock()):
                return ReadResult(EntityKind.ESCROW, record.entity, SOURCE_CACHE, record.synced_at)

        job = await self.get_job(job_id)
        if job is None or not job.entity.escrow_address:
            return None
        result = await self.get_escrow(job.entity.escrow_address)
        if result is not None and result.entity.job_id is None:
            result.entity.job_id = job_id
        return result

    async def _read_list(
        self,
        kind: EntityKind,
        label: str,
        cached: Callable[[], List[CacheRecord]],
        live: Optional[Callable[[], Awaitable[List[Any]]]],
    ) -> ListResult:
        """
        Same preference order as _read, applied to a whole list: the cached
        list is served only when non-empty and every record in it is fresh.
        Lists without a live source fall back to whatever the cache holds.
        """
        now = self.clock()
        records: List[CacheRecord] = []
        if self.config.enable_db_cache:
            records = [r for r in cached() if self._valid(r)]
            if records and all(r.is_fresh(self.config.cache_ttl_sec, now) for r in records):
                return ListResult.from_records(kind, records, SOURCE_CACHE)

        if live is None:
            if not self.config.enable_db_cache:
                raise CacheUnavailable(kind, label, "cache disabled and no live source")
            return ListResult.from_records(kind, records, SOURCE_STALE if records else SOURCE_CACHE)

        try:
            entities = await live()
        except RpcError as e:
            grace = self.config.cache_ttl_sec + self.config.stale_grace_sec
            if records and all(r.age_sec(now) < grace for r in records):
                logger.warning(f"[read_policy] live list of {label} failed, serving {len(records)} stale records")
                return ListResult.from_records(kind, records, SOURCE_STALE)
            logger.error(f"[read_policy] {label} unavailable: {e}")
            raise CacheUnavailable(kind, label, str(e)) from e
        return ListResult(kind, entities, SOURCE_LIVE)

"""sync/collector.py

Derives the full delta set for a block range.

Per tracked contract:
- JobBoard: job-board events, then snapshots of every touched job (plus the
  cached open/hired jobs), their direct offers, new proposals, escrows
  created by JobHired and the hired freelancers' profiles
- JobEscrow: escrow events for all non-terminal cached escrows, then
  escrow snapshots and dispute status
- FreelancerFactory: profile refresh of every cached profile

Event deltas keep their log position and carry the touched entities read at
that log's block (providers must serve historical state). Snapshots are
read at to_block and sort after every event of that block, so the final
state equals chain state at to_block no matter which events were missed or
in which order the rest arrived.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ingestion.ingestor import sort_deltas
from ingestion.metadata import MetadataFetcher
from ingestion.normalize import ChainEvent, Delta, event_targets, normalize_event, snapshot_delta
from ingestion.rpc.client import ChainReader
from lifecycle.interpreter import normalize_address
from lifecycle.models import DisputeStatus, EntityKind, JobStatus, proposal_key
from storage.cache_store import CacheReader

logger = logging.getLogger(__name__)

SWEEP_JOB_STATUSES = (JobStatus.OPEN, JobStatus.HIRED)


@dataclass
class DeltaBatch:
    from_block: int
    to_block: int
    events: int = 0
    deltas: List[Delta] = field(default_factory=list)
    # called after every collected step; the reconciler renews its lease here
    heartbeat: Optional[Callable[[], None]] = None

    def extend(self, deltas: Iterable[Delta]) -> None:
        self.deltas.extend(deltas)
        if self.heartbeat is not None:
            self.heartbeat()

    def ordered(self) -> List[Delta]:
        return sort_deltas(self.deltas)


class DeltaCollector:
    """
    Usage:
        collector = DeltaCollector(reader, store.reader(), fetcher)
        batch = await collector.collect("JobBoard", 100, 200)
        ingestor.apply_all(batch.ordered())
    """

    def __init__(self, reader: ChainReader, cache: CacheReader, fetcher: Optional[MetadataFetcher] = None):
        self.reader = reader
        self.cache = cache
        self.fetcher = fetcher

    async def collect(
        self,
        contract_name: str,
        from_block: int,
        to_block: int,
        sweep: bool = True,
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> DeltaBatch:
        batch = DeltaBatch(from_block=from_block, to_block=to_block, heartbeat=heartbeat)
        if contract_name == "JobBoard":
            await self._collect_job_board(batch, sweep)
        elif contract_name == "JobEscrow":
            await self._collect_escrows(batch, sweep)
        elif contract_name == "FreelancerFactory":
            wallets = [r.entity_id for r in self.cache.list(EntityKind.PROFILE)] if sweep else []
            batch.extend(await self.profile_deltas(wallets, to_block))
        else:
            raise ValueError(f"unknown contract {contract_name!r}")
        logger.info(
            f"[collector] {contract_name} {from_block}-{to_block}: "
            f"{batch.events} events, {len(batch.deltas)} deltas"
        )
        return batch

    # -- per contract -----------------------------------------------------

    async def _collect_job_board(self, batch: DeltaBatch, sweep: bool) -> None:
        events = await self.reader.get_job_board_events(batch.from_block, batch.to_block)
        batch.events = len(events)
        batch.extend(await self.event_deltas(events))

        job_ids: Set[int] = set()
        applications: Set[Tuple[int, str]] = set()
        hired: Dict[str, int] = {}
        freelancers: Set[str] = set()
        for event in events:
            job_id = int(event.args["jobId"])
            job_ids.add(job_id)
            if event.name == "JobApplied":
                applications.add((job_id, event.args["freelancer"].lower()))
            elif event.name == "JobHired":
                hired[event.args["escrow"].lower()] = job_id
                freelancers.add(event.args["freelancer"].lower())

        if sweep:
            job_ids.update(int(r.entity_id) for r in self.cache.list_jobs(SWEEP_JOB_STATUSES))
            job_ids.update(int(r.entity_id) for r in self.cache.list_undecided_offers())

        block = batch.to_block
        batch.extend(await self.job_deltas(sorted(job_ids), block))
        batch.extend(await self.offer_deltas(sorted(job_ids), block))
        batch.extend(await self.proposal_deltas(sorted(applications), block))
        batch.extend(await self.escrow_deltas(hired, block))
        batch.extend(await self.profile_deltas(sorted(freelancers), block))

    async def _collect_escrows(self, batch: DeltaBatch, sweep: bool) -> None:
        open_escrows = {r.entity_id: r.entity.job_id for r in self.cache.list_open_escrows()}
        events: List[ChainEvent] = []
        if open_escrows:
            events = await self.reader.get_escrow_events(list(open_escrows), batch.from_block, batch.to_block)
        batch.events = len(events)
        batch.extend(await self.event_deltas(events, {a: j for a, j in open_escrows.items() if j is not None}))

        touched = {e.address: open_escrows.get(e.address) for e in events}
        targets = dict(open_escrows) if sweep else touched
        batch.extend(await self.escrow_deltas(targets, batch.to_block))

    # -- event state reads -------------------------------------------------

    async def event_deltas(self, events: Iterable[ChainEvent], escrow_jobs: Optional[Dict[str, int]] = None) -> List[Delta]:
        """
        Resolve each log to the full state of the entities it touched, read
        at the log's own block.

        Args:
            events: Decoded logs
            escrow_jobs: Known escrow address -> job id; JobHired logs in
                events and the cache fill in the rest
        """
        events = list(events)
        jobs: Dict[str, int] = dict(escrow_jobs or {})
        for event in events:
            if event.name == "JobHired":
                jobs[normalize_address(event.args["escrow"])] = int(event.args["jobId"])

        reads: Dict[Tuple[EntityKind, str, int], Optional[dict]] = {}
        deltas: List[Delta] = []
        for event in events:
            states = {}
            for kind, entity_id in event_targets(event):
                key = (kind, entity_id, event.block_number)
                if key not in reads:
                    reads[key] = await self._read_state(kind, entity_id, event.block_number, jobs)
                states[(kind, entity_id)] = reads[key]
            deltas.extend(normalize_event(event, states))
        return deltas

    async def _read_state(self, kind: EntityKind, entity_id: str, block: int, escrow_jobs: Dict[str, int]) -> Optional[dict]:
        if kind is EntityKind.JOB:
            return await self.reader.snapshot_job(int(entity_id), block)
        if kind is EntityKind.PROPOSAL:
            job_id, _, freelancer = entity_id.partition(":")
            return await self.reader.snapshot_proposal(int(job_id), freelancer, block)
        if kind is EntityKind.ESCROW:
            fields = await self.reader.snapshot_escrow(entity_id, block)
            job_id = escrow_jobs.get(entity_id)
            if job_id is None:
                cached = self.cache.get(EntityKind.ESCROW, entity_id)
                job_id = cached.entity.job_id if cached is not None else None
            if job_id is not None:
                fields["job_id"] = job_id
            return fields
        raise ValueError(f"no state reader for {kind.value}")

    # -- snapshot builders (also used by manual sync) ---------------------

    async def job_deltas(self, job_ids: Iterable[int], block: int) -> List[Delta]:
        deltas = []
        for job_id in job_ids:
            fields = await self.reader.snapshot_job(job_id, block)
            if fields is None:
                continue
            text = await self._description_text(job_id, fields.get("description_uri"))
            if text is not None:
                fields["description"] = text
            deltas.append(snapshot_delta(EntityKind.JOB, str(job_id), block, "getJob", fields))
        return deltas

    async def _description_text(self, job_id: int, uri: Optional[str]) -> Optional[str]:
        if self.fetcher is None or not uri:
            return None
        cached = self.cache.get(EntityKind.JOB, str(job_id))
        if cached is not None and cached.entity.description_uri == uri and cached.entity.description:
            return cached.entity.description
        result = await self.fetcher.fetch(uri)
        return result.text_or(None)

    async def offer_deltas(self, job_ids: Iterable[int], block: int) -> List[Delta]:
        deltas = []
        for job_id in job_ids:
            fields = await self.reader.snapshot_direct_offer(job_id, block)
            if fields is not None:
                deltas.append(snapshot_delta(EntityKind.DIRECT_OFFER, str(job_id), block, "getDirectOffer", fields))
        return deltas

    async def proposal_deltas(self, applications: Iterable[Tuple[int, str]], block: int) -> List[Delta]:
        deltas = []
        for job_id, freelancer in applications:
            fields = await self.reader.snapshot_proposal(job_id, freelancer, block)
            if fields is None:
                continue
            if self.fetcher is not None and fields.get("proposal_uri"):
                result = await self.fetcher.fetch(fields["proposal_uri"])
                text = result.text_or(None)
                if text is not None:
                    fields["cover_letter"] = text
            deltas.append(snapshot_delta(
                EntityKind.PROPOSAL, proposal_key(job_id, freelancer), block, "getApplicantDetails", fields,
            ))
        return deltas

    async def escrow_deltas(self, escrows: Dict[str, Optional[int]], block: int) -> List[Delta]:
        """escrows: address -> job id (None when unknown)."""
        deltas = []
        for address, job_id in sorted(escrows.items()):
            fields = await self.reader.snapshot_escrow(address, block)
            if job_id is not None:
                fields["job_id"] = job_id
            deltas.append(snapshot_delta(EntityKind.ESCROW, address, block, "escrowState", fields))
            if fields["disputed"]:
                dispute = {
                    "dispute_reason_uri": fields.get("last_dispute_uri"),
                    "status": (DisputeStatus.RESOLVED if fields["terminal"] else DisputeStatus.OPEN).value,
                }
                if job_id is not None:
                    dispute["job_id"] = job_id
                deltas.append(snapshot_delta(EntityKind.DISPUTE, address, block, "escrowState", dispute))
        return deltas

    async def profile_deltas(self, wallets: Iterable[str], block: int) -> List[Delta]:
        deltas = []
        for wallet in wallets:
            fields = await self.reader.snapshot_profile(wallet, block)
            if fields is not None:
                deltas.append(snapshot_delta(EntityKind.PROFILE, wallet.lower(), block, "freelancerProfile", fields))
        return deltas

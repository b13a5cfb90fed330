"""sync/manual.py

Operator-triggered targeted sync.

Reads snapshots at the current head and applies them through the ingestor;
never touches the reconciliation checkpoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ingestion.ingestor import EventIngestor, sort_deltas
from ingestion.normalize import Delta
from ingestion.rpc.client import ChainReader
from sync.collector import DeltaCollector

logger = logging.getLogger(__name__)

SYNC_TYPES = ("job", "profile", "escrow", "proposal", "all")


@dataclass(frozen=True)
class ManualSyncRequest:
    type: str
    id: Optional[str] = None
    from_block: Optional[int] = None
    job_id: Optional[int] = None
    escrow_address: Optional[str] = None
    freelancer_address: Optional[str] = None

    def validate(self) -> None:
        if self.type not in SYNC_TYPES:
            raise ValueError(f"type must be one of {'|'.join(SYNC_TYPES)}, got {self.type!r}")
        if self.type == "job" and self._job_id() is None:
            raise ValueError("job sync requires jobId or id")
        if self.type == "profile" and not (self.freelancer_address or self.id):
            raise ValueError("profile sync requires freelancerAddress or id")
        if self.type == "escrow" and not (self.escrow_address or self.id):
            raise ValueError("escrow sync requires escrowAddress or id")
        if self.type == "proposal" and (self._job_id() is None or not self.freelancer_address):
            raise ValueError("proposal sync requires jobId and freelancerAddress")
        if self.from_block is not None and self.from_block < 0:
            raise ValueError("fromBlock must be >= 0")

    def _job_id(self) -> Optional[int]:
        if self.job_id is not None:
            return int(self.job_id)
        if self.id is not None and str(self.id).isdigit():
            return int(self.id)
        return None


class ManualSync:
    """
    Usage:
        result = await ManualSync(reader, collector, ingestor).run(ManualSyncRequest(type="job", job_id=7))
    """

    def __init__(self, reader: ChainReader, collector: DeltaCollector, ingestor: EventIngestor):
        self.reader = reader
        self.collector = collector
        self.ingestor = ingestor

    async def run(self, request: ManualSyncRequest) -> Dict[str, Any]:
        request.validate()
        block = await self.reader.get_block_number()
        c = self.collector

        if request.type == "job":
            job_id = request._job_id()
            deltas = await c.job_deltas([job_id], block) + await c.offer_deltas([job_id], block)
            applicants = await self.reader.get_applicants(job_id, block)
            deltas += await c.proposal_deltas([(job_id, a) for a in applicants], block)
        elif request.type == "profile":
            deltas = await c.profile_deltas([(request.freelancer_address or request.id).lower()], block)
        elif request.type == "escrow":
            address = (request.escrow_address or request.id).lower()
            deltas = await c.escrow_deltas({address: request._job_id()}, block)
        elif request.type == "proposal":
            deltas = await c.proposal_deltas([(request._job_id(), request.freelancer_address.lower())], block)
        else:
            deltas = await self._sync_all(request.from_block, block)

        counts = self.ingestor.apply_all(sort_deltas(deltas))
        logger.info(f"[manual_sync] {request.type} at block {block}: {len(deltas)} deltas, {counts}")
        return {"type": request.type, "block": block, "deltas": len(deltas), "applied": counts}

    async def _sync_all(self, from_block: Optional[int], block: int) -> List[Delta]:
        c = self.collector
        deltas: List[Delta] = []
        if from_block is not None and from_block <= block:
            for name in ("JobBoard", "JobEscrow"):
                batch = await c.collect(name, from_block, block, sweep=False)
                deltas.extend(batch.deltas)

        next_job_id = await self.reader.get_next_job_id(block)
        logger.info(f"[manual_sync] sweeping {next_job_id} jobs")
        job_ids = list(range(next_job_id))
        job_deltas = await c.job_deltas(job_ids, block)
        deltas.extend(job_deltas)
        deltas.extend(await c.offer_deltas(job_ids, block))

        escrows = {
            d.fields["escrow_address"]: int(d.entity_id)
            for d in job_deltas
            if d.fields.get("escrow_address")
        }
        deltas.extend(await c.escrow_deltas(escrows, block))
        return deltas

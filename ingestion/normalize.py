"""ingestion/normalize.py

Decoded contract logs and field reads -> entity deltas.

A Delta is the unit the ingestor applies: one entity, one source position
(block, log index), one full field dict. A log never carries state on its
own: it names the entities it touched (event_targets) and the collector
re-reads each of them at the log's block, so every delta holds the entity
as the chain saw it at that position. Escrow identity is always the escrow
contract's own address (the log emitter or the JobHired argument), never a
transaction hash.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from lifecycle.interpreter import normalize_address
from lifecycle.models import DisputeStatus, EntityKind, proposal_key

# Snapshots read "as of" a block sort after every log in that block
SNAPSHOT_LOG_INDEX = 2**31 - 1

JOB_EVENTS = ("JobPosted", "JobCompleted")
ESCROW_EVENTS = ("WorkDelivered", "DisputeRaised", "Paid")

EntityRef = Tuple[EntityKind, str]


@dataclass(frozen=True)
class ChainEvent:
    """Decoded contract log."""
    name: str
    args: Dict[str, Any]
    address: str
    block_number: int
    log_index: int
    tx_hash: str
    block_timestamp: int = 0
    sender: Optional[str] = None


@dataclass
class Delta:
    """
    Change for one cached entity.

    Attributes:
        kind: Entity kind
        entity_id: Cache key
        block_number / log_index: Source position used by the ordering guard
        source: "event:<Name>" or "snapshot:<reader>"
        fields: Entity state at the source position
        tx_hash: Set for event deltas only
    """
    kind: EntityKind
    entity_id: str
    block_number: int
    log_index: int
    source: str
    fields: Dict[str, Any] = field(default_factory=dict)
    tx_hash: Optional[str] = None

    @property
    def is_event(self) -> bool:
        return self.tx_hash is not None

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def idempotency_key(self) -> str:
        if self.is_event:
            # one log can fan out to several entities
            return f"{self.tx_hash}:{self.log_index}:{self.kind.value}:{self.entity_id}"
        return f"{self.kind.value}:{self.entity_id}:{self.source}:{self.block_number}"

    def describe(self) -> str:
        return f"{self.source} {self.kind.value}:{self.entity_id}@{self.block_number}/{self.log_index}"


def snapshot_delta(kind: EntityKind, entity_id: str, block_number: int, reader: str, fields: Dict[str, Any]) -> Delta:
    return Delta(
        kind=kind,
        entity_id=str(entity_id),
        block_number=int(block_number),
        log_index=SNAPSHOT_LOG_INDEX,
        source=f"snapshot:{reader}",
        fields=fields,
    )


def _event_delta(event: ChainEvent, kind: EntityKind, entity_id: str, fields: Dict[str, Any]) -> Delta:
    return Delta(
        kind=kind,
        entity_id=str(entity_id),
        block_number=event.block_number,
        log_index=event.log_index,
        source=f"event:{event.name}",
        fields=fields,
        tx_hash=event.tx_hash,
    )


def event_targets(event: ChainEvent) -> List[EntityRef]:
    """Entities whose state a log changed; unknown event names touch nothing."""
    a = event.args
    if event.name in JOB_EVENTS:
        return [(EntityKind.JOB, str(int(a["jobId"])))]
    if event.name == "JobApplied":
        return [(EntityKind.PROPOSAL, proposal_key(a["jobId"], normalize_address(a["freelancer"])))]
    if event.name == "JobHired":
        return [
            (EntityKind.JOB, str(int(a["jobId"]))),
            (EntityKind.ESCROW, normalize_address(a["escrow"])),
        ]
    if event.name in ESCROW_EVENTS:
        return [(EntityKind.ESCROW, normalize_address(event.address))]
    return []


def normalize_event(event: ChainEvent, states: Mapping[EntityRef, Optional[Dict[str, Any]]]) -> List[Delta]:
    """
    Map a decoded log to its deltas.

    Args:
        event: Decoded log
        states: Field dict of every event_targets() entity read at the log's
            block; None when the entity did not exist there

    Returns:
        One delta per target that has state, plus a dispute record for
        DisputeRaised
    """
    deltas: List[Delta] = []
    for kind, entity_id in event_targets(event):
        fields = states.get((kind, entity_id))
        if fields is None:
            continue
        deltas.append(_event_delta(event, kind, entity_id, dict(fields)))

        if event.name == "DisputeRaised" and kind is EntityKind.ESCROW:
            deltas.append(_event_delta(event, EntityKind.DISPUTE, entity_id, _dispute_fields(event, fields)))
    return deltas


def _dispute_fields(event: ChainEvent, escrow: Dict[str, Any]) -> Dict[str, Any]:
    resolved = escrow.get("terminal") and escrow.get("disputed")
    dispute = {
        "dispute_reason_uri": event.args.get("reasonURI") or escrow.get("last_dispute_uri"),
        "transaction_hash": event.tx_hash,
        "status": (DisputeStatus.RESOLVED if resolved else DisputeStatus.OPEN).value,
        "created_at": int(event.block_timestamp or 0),
    }
    if event.sender:
        dispute["disputer_address"] = normalize_address(event.sender)
    if escrow.get("job_id") is not None:
        dispute["job_id"] = int(escrow["job_id"])
    return dispute

"""lifecycle/models.py

Domain entities mirrored from the JobBoard / JobEscrow / FreelancerProfile
contracts.

Entities are plain dataclasses with to_dict/from_dict so the cache store can
persist them as JSON payloads. Addresses are always lower-case hex; the zero
address is stored as None.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Type


class JobStatus(IntEnum):
    """On-chain JobBoard status (uint8)."""
    UNKNOWN = 0
    OPEN = 1
    HIRED = 2
    CANCELLED = 3
    COMPLETED = 4
    EXPIRED = 5


class EscrowPhase(Enum):
    """Escrow sub-state derived from the raw flags."""
    FUNDED = "funded"
    DELIVERED = "delivered"
    DISPUTED = "disputed"
    CANCEL_REQUESTED = "cancel_requested"
    APPROVED = "approved"
    RESOLVED = "resolved"
    CANCEL_ACCEPTED = "cancel_accepted"


class DisputeStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class EntityKind(Enum):
    """Cached entity kinds; the value doubles as the table name."""
    JOB = "jobs"
    ESCROW = "escrows"
    PROPOSAL = "proposals"
    DIRECT_OFFER = "direct_offers"
    PROFILE = "freelancer_profiles"
    DISPUTE = "disputes"


class _Entity:
    """Shared (de)serialization for the entity dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, list):
                value = [v.to_dict() if isinstance(v, _Entity) else v for v in value]
            out[f.name] = value
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        return cls(**cls._coerce(kwargs))

    @classmethod
    def _coerce(cls, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return kwargs


@dataclass
class Job(_Entity):
    """
    JobBoard job.

    Attributes:
        job_id: On-chain job id (entity key)
        client: Poster wallet
        budget_usdc: Budget in token base units
        status: JobStatus
        hired_freelancer: Set once hired
        escrow_address: Set iff status is HIRED or COMPLETED
        created_at / updated_at / expires_at: Unix seconds from the contract
        description: Resolved descriptionURI text, when fetched
    """
    job_id: int
    client: Optional[str] = None
    title: str = ""
    description_uri: str = ""
    budget_usdc: int = 0
    status: JobStatus = JobStatus.UNKNOWN
    hired_freelancer: Optional[str] = None
    escrow_address: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
    expires_at: int = 0
    tags: List[str] = field(default_factory=list)
    posting_bond: int = 0
    description: Optional[str] = None

    @classmethod
    def _coerce(cls, kwargs):
        kwargs["job_id"] = int(kwargs["job_id"])
        if "status" in kwargs:
            kwargs["status"] = JobStatus(int(kwargs["status"]))
        if "tags" in kwargs:
            kwargs["tags"] = list(kwargs["tags"] or [])
        return kwargs

    @property
    def entity_id(self) -> str:
        return str(self.job_id)


@dataclass
class Delivery(_Entity):
    uri: str
    timestamp: int
    version: int


@dataclass
class Escrow(_Entity):
    """
    Per-job escrow contract.

    delivery_history is append-only with strictly increasing versions; once
    terminal is True the record is frozen.
    """
    address: str
    job_id: Optional[int] = None
    client: Optional[str] = None
    freelancer: Optional[str] = None
    amount: int = 0
    cancel_end: Optional[int] = None
    delivery_due: Optional[int] = None
    review_due: Optional[int] = None
    delivered: bool = False
    disputed: bool = False
    terminal: bool = False
    cancel_requested_by: Optional[str] = None
    last_delivery_uri: Optional[str] = None
    last_dispute_uri: Optional[str] = None
    delivery_history: List[Delivery] = field(default_factory=list)

    @classmethod
    def _coerce(cls, kwargs):
        if kwargs.get("job_id") is not None:
            kwargs["job_id"] = int(kwargs["job_id"])
        history = kwargs.get("delivery_history") or []
        kwargs["delivery_history"] = [
            d if isinstance(d, Delivery) else Delivery.from_dict(d) for d in history
        ]
        return kwargs

    @property
    def entity_id(self) -> str:
        return self.address

    @property
    def latest_delivery(self) -> Optional[Delivery]:
        if not self.delivery_history:
            return None
        return max(self.delivery_history, key=lambda d: d.version)


@dataclass
class Proposal(_Entity):
    job_id: int
    freelancer: str
    proposal_uri: Optional[str] = None
    bid_amount: int = 0
    delivery_days: int = 0
    applied_at: int = 0
    cover_letter: Optional[str] = None

    @classmethod
    def _coerce(cls, kwargs):
        kwargs["job_id"] = int(kwargs["job_id"])
        return kwargs

    @property
    def entity_id(self) -> str:
        return proposal_key(self.job_id, self.freelancer)


@dataclass
class DirectOffer(_Entity):
    """Client-to-freelancer offer; at most one of accepted/rejected/cancelled."""
    job_id: int
    client: Optional[str] = None
    freelancer: Optional[str] = None
    title: str = ""
    description_uri: str = ""
    budget_usdt: int = 0
    delivery_days: int = 0
    created_at: int = 0
    expires_at: int = 0
    accepted: bool = False
    rejected: bool = False
    cancelled: bool = False

    @classmethod
    def _coerce(cls, kwargs):
        kwargs["job_id"] = int(kwargs["job_id"])
        return kwargs

    @property
    def entity_id(self) -> str:
        return str(self.job_id)

    @property
    def decision(self) -> Optional[str]:
        for name in ("accepted", "rejected", "cancelled"):
            if getattr(self, name):
                return name
        return None


@dataclass
class FreelancerProfile(_Entity):
    wallet: str
    profile_address: Optional[str] = None
    hourly_rate: int = 0
    bio: str = ""
    skills: List[str] = field(default_factory=list)
    portfolio_uri: str = ""
    total_earned: int = 0
    jobs_completed: int = 0
    average_rating: Optional[float] = None
    is_active: bool = False

    @property
    def entity_id(self) -> str:
        return self.wallet


@dataclass
class Dispute(_Entity):
    """Dispute raised on an escrow; keyed by the escrow address."""
    escrow_address: str
    job_id: Optional[int] = None
    disputer_address: Optional[str] = None
    dispute_reason_uri: Optional[str] = None
    transaction_hash: Optional[str] = None
    status: DisputeStatus = DisputeStatus.OPEN
    created_at: int = 0

    @classmethod
    def _coerce(cls, kwargs):
        if "status" in kwargs:
            kwargs["status"] = DisputeStatus(kwargs["status"])
        return kwargs

    @property
    def entity_id(self) -> str:
        return self.escrow_address


ENTITY_TYPES: Dict[EntityKind, Type[_Entity]] = {
    EntityKind.JOB: Job,
    EntityKind.ESCROW: Escrow,
    EntityKind.PROPOSAL: Proposal,
    EntityKind.DIRECT_OFFER: DirectOffer,
    EntityKind.PROFILE: FreelancerProfile,
    EntityKind.DISPUTE: Dispute,
}

# Field that carries the entity id inside each payload
KEY_FIELDS: Dict[EntityKind, str] = {
    EntityKind.JOB: "job_id",
    EntityKind.ESCROW: "address",
    EntityKind.DIRECT_OFFER: "job_id",
    EntityKind.PROFILE: "wallet",
    EntityKind.DISPUTE: "escrow_address",
}


def proposal_key(job_id: int, freelancer: str) -> str:
    return f"{int(job_id)}:{freelancer.lower()}"


def blank_entity(kind: EntityKind, entity_id: str) -> _Entity:
    """Default-valued entity used as the base for a first observation."""
    cls = ENTITY_TYPES[kind]
    if kind is EntityKind.PROPOSAL:
        job_id, _, freelancer = entity_id.partition(":")
        return cls(job_id=int(job_id), freelancer=freelancer)
    return cls.from_dict({KEY_FIELDS[kind]: entity_id})


def entity_from_dict(kind: EntityKind, data: Dict[str, Any]) -> _Entity:
    return ENTITY_TYPES[kind].from_dict(data)

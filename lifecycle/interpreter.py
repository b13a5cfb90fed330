"""lifecycle/interpreter.py

Raw contract values -> validated domain entities.

Two halves:
- *_fields(): decode raw ABI tuples into field dicts (addresses lower-cased,
  zero address -> None, bytes32 tags -> text)
- merge(): fold a field dict into the cached entity and validate the result
  against the lifecycle graph

Used by the ingestor before every write and by readers to sanity-check
cached payloads. Holds no state.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from lifecycle.models import (
    DirectOffer,
    Dispute,
    DisputeStatus,
    EntityKind,
    Escrow,
    Job,
    JobStatus,
    blank_entity,
    entity_from_dict,
)
from lifecycle.state_machine import (
    ESCROW_REQUIRED,
    InconsistentTransition,
    check_delivery_history,
    check_escrow,
    check_job_escrow,
    check_job_transition,
)

ZERO_ADDRESS = "0x" + "0" * 40

# averageRating() is stored on-chain scaled by 100
RATING_SCALE = 100


def normalize_address(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).lower()
    if not s or s == ZERO_ADDRESS:
        return None
    return s


def bytes32_to_text(value: Any) -> str:
    """Best-effort decode of a bytes32 tag; falls back to hex."""
    raw = bytes(value) if not isinstance(value, str) else bytes.fromhex(value.removeprefix("0x"))
    stripped = raw.rstrip(b"\x00")
    try:
        text = stripped.decode("utf-8")
    except UnicodeDecodeError:
        return "0x" + raw.hex()
    return text if text.isprintable() else "0x" + raw.hex()


# ---------------------------------------------------------------------------
# raw decoding
# ---------------------------------------------------------------------------

def job_fields(raw: Sequence[Any]) -> Dict[str, Any]:
    """getJob(uint256) -> (client, title, descriptionURI, budgetUSDC, status,
    hiredFreelancer, escrow, createdAt, updatedAt, expiresAt, tags, postingBond)"""
    return {
        "client": normalize_address(raw[0]),
        "title": raw[1] or "",
        "description_uri": raw[2] or "",
        "budget_usdc": int(raw[3]),
        "status": int(JobStatus(int(raw[4]))),
        "hired_freelancer": normalize_address(raw[5]),
        "escrow_address": normalize_address(raw[6]),
        "created_at": int(raw[7]),
        "updated_at": int(raw[8]),
        "expires_at": int(raw[9]),
        "tags": [bytes32_to_text(t) for t in (raw[10] or [])],
        "posting_bond": int(raw[11]),
    }


def deliveries_from_raw(raw: Sequence[Sequence[Any]]) -> List[Dict[str, Any]]:
    """getAllDeliveries() -> (string uri, uint64 timestamp, uint256 version)[]"""
    return [
        {"uri": uri, "timestamp": int(ts), "version": int(version)}
        for uri, ts, version in raw
    ]


def escrow_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    """Fold the individual escrow getters into one field dict."""
    cancel_end, delivery_due, review_due = values["current_deadlines"]
    out = {
        "client": normalize_address(values.get("client")),
        "freelancer": normalize_address(values.get("freelancer")),
        "amount": int(values.get("amount") or 0),
        "cancel_end": int(cancel_end) or None,
        "delivery_due": int(delivery_due) or None,
        "review_due": int(review_due) or None,
        "delivered": bool(values["delivered"]),
        "disputed": bool(values["disputed"]),
        "terminal": bool(values["terminal"]),
        "cancel_requested_by": normalize_address(values.get("cancel_requested_by")),
        "last_delivery_uri": values.get("last_delivery_uri") or None,
        "last_dispute_uri": values.get("last_dispute_uri") or None,
        "delivery_history": deliveries_from_raw(values.get("deliveries") or []),
    }
    if values.get("job_id") is not None:
        out["job_id"] = int(values["job_id"])
    return out


def proposal_fields(raw: Sequence[Any]) -> Optional[Dict[str, Any]]:
    """getApplicantDetails(jobId, freelancer) -> (freelancer, appliedAt,
    proposalURI, bidAmount, deliveryDays). None when no application exists."""
    if normalize_address(raw[0]) is None:
        return None
    return {
        "proposal_uri": raw[2] or None,
        "applied_at": int(raw[1]),
        "bid_amount": int(raw[3]),
        "delivery_days": int(raw[4]),
    }


def direct_offer_fields(raw: Sequence[Any]) -> Optional[Dict[str, Any]]:
    """getDirectOffer(uint256) tuple; None when the slot is empty."""
    if normalize_address(raw[1]) is None:
        return None
    return {
        "job_id": int(raw[0]),
        "client": normalize_address(raw[1]),
        "freelancer": normalize_address(raw[2]),
        "title": raw[3] or "",
        "description_uri": raw[4] or "",
        "budget_usdt": int(raw[5]),
        "delivery_days": int(raw[6]),
        "created_at": int(raw[7]),
        "expires_at": int(raw[8]),
        "accepted": bool(raw[9]),
        "rejected": bool(raw[10]),
        "cancelled": bool(raw[11]),
    }


def profile_fields(profile_address: str, values: Dict[str, Any]) -> Dict[str, Any]:
    rating = values.get("average_rating")
    return {
        "profile_address": normalize_address(profile_address),
        "hourly_rate": int(values.get("hourly_rate") or 0),
        "bio": values.get("bio") or "",
        "skills": list(values.get("skills") or []),
        "portfolio_uri": values.get("portfolio_uri") or "",
        "total_earned": int(values.get("total_earned") or 0),
        "jobs_completed": int(values.get("jobs_completed") or 0),
        "average_rating": int(rating) / RATING_SCALE if rating else None,
        "is_active": bool(values.get("is_active")),
    }


# ---------------------------------------------------------------------------
# merge + validation
# ---------------------------------------------------------------------------

def merge(kind: EntityKind, entity_id: str, previous: Optional[Any], fields: Dict[str, Any]):
    """
    Fold fields into the previous entity and validate the result.

    Args:
        kind: Entity kind
        entity_id: Cache key
        previous: Cached entity or None for a first observation
        fields: Entity state as read at the delta's position

    Returns:
        New entity

    Raises:
        InconsistentTransition: previous is kept by the caller
    """
    label = f"{kind.value}:{entity_id}"
    base = previous.to_dict() if previous is not None else blank_entity(kind, entity_id).to_dict()
    data = dict(base)
    data.update(fields)
    new = entity_from_dict(kind, data)

    if kind is EntityKind.JOB:
        _merge_job(label, previous, new)
    elif kind is EntityKind.ESCROW:
        _merge_escrow(label, previous, new)
    elif kind is EntityKind.DIRECT_OFFER:
        _merge_offer(label, previous, new)
    elif kind is EntityKind.DISPUTE:
        _merge_dispute(label, previous, new)
    return new


def _merge_job(label: str, previous: Optional[Job], new: Job) -> None:
    if previous is not None:
        check_job_transition(label, previous.status, new.status, new.hired_freelancer, new.escrow_address)
        new.updated_at = max(previous.updated_at, new.updated_at)
    if new.status not in ESCROW_REQUIRED:
        new.escrow_address = None
    check_job_escrow(label, new.status, new.escrow_address)


def _merge_escrow(label: str, previous: Optional[Escrow], new: Escrow) -> None:
    if previous is not None:
        if previous.terminal and new.to_dict() != previous.to_dict():
            raise InconsistentTransition(label, "terminal escrow cannot change")
        check_delivery_history(label, previous.delivery_history, new.delivery_history)
    else:
        check_delivery_history(label, [], new.delivery_history)
    check_escrow(label, new)


def _merge_offer(label: str, previous: Optional[DirectOffer], new: DirectOffer) -> None:
    flags = sum(1 for f in (new.accepted, new.rejected, new.cancelled) if f)
    if flags > 1:
        raise InconsistentTransition(label, "more than one of accepted/rejected/cancelled set")
    if previous is not None and previous.decision and new.to_dict() != previous.to_dict():
        raise InconsistentTransition(label, f"offer already {previous.decision}")


def _merge_dispute(label: str, previous: Optional[Dispute], new: Dispute) -> None:
    if previous is not None and previous.status is DisputeStatus.RESOLVED and new.status is DisputeStatus.OPEN:
        raise InconsistentTransition(label, "resolved dispute cannot reopen")


def check_record(kind: EntityKind, entity: Any) -> None:
    """
    Validate a cached entity on its own (reader side).

    Raises:
        InconsistentTransition
    """
    label = f"{kind.value}:{entity.entity_id}"
    if kind is EntityKind.JOB:
        check_job_escrow(label, entity.status, entity.escrow_address)
        if entity.status not in ESCROW_REQUIRED and entity.escrow_address:
            raise InconsistentTransition(label, f"job in {entity.status.name} still has an escrow")
    elif kind is EntityKind.ESCROW:
        check_delivery_history(label, [], entity.delivery_history)
        check_escrow(label, entity)
    elif kind is EntityKind.DIRECT_OFFER:
        _merge_offer(label, None, entity)

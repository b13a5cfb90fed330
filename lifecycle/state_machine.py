"""
Job / Escrow lifecycle graph.

Job:    UNKNOWN -> OPEN -> {HIRED, CANCELLED, EXPIRED}
        HIRED -> {COMPLETED, CANCELLED}

Escrow: FUNDED -> DELIVERED(v1..vn) -> {APPROVED, DISPUTED -> RESOLVED}
        FUNDED -> CANCEL_REQUESTED -> CANCEL_ACCEPTED

HARD RULES:
- Pure functions only, no I/O and no cached state
- Any move that reverses the graph, or skips a step its auxiliary fields
  do not witness, raises InconsistentTransition
- terminal is absorbing; the concrete outcome is rebuilt from the flags
"""

from typing import Dict, FrozenSet, List, Optional, Sequence, Set

from lifecycle.models import Delivery, Escrow, EscrowPhase, JobStatus


class InconsistentTransition(ValueError):
    """Raised when observed data would move an entity off its lifecycle graph."""

    def __init__(self, entity: str, message: str):
        super().__init__(f"{entity}: {message}")
        self.entity = entity
        self.message = message


JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.UNKNOWN: frozenset({JobStatus.OPEN}),
    JobStatus.OPEN: frozenset({JobStatus.HIRED, JobStatus.CANCELLED, JobStatus.EXPIRED}),
    JobStatus.HIRED: frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.CANCELLED: frozenset(),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.EXPIRED: frozenset(),
}

ESCROW_REQUIRED = frozenset({JobStatus.HIRED, JobStatus.COMPLETED})

TERMINAL_PHASES = frozenset({
    EscrowPhase.APPROVED,
    EscrowPhase.RESOLVED,
    EscrowPhase.CANCEL_ACCEPTED,
})


def reachable_statuses(src: JobStatus) -> Set[JobStatus]:
    """All statuses reachable from src in one or more steps."""
    seen: Set[JobStatus] = set()
    frontier = list(JOB_TRANSITIONS[src])
    while frontier:
        status = frontier.pop()
        if status in seen:
            continue
        seen.add(status)
        frontier.extend(JOB_TRANSITIONS[status])
    return seen


def check_job_transition(
    entity: str,
    prev: JobStatus,
    new: JobStatus,
    hired_freelancer: Optional[str] = None,
    escrow_address: Optional[str] = None,
) -> None:
    """
    Validate a job status move.

    A read may observe several moves at once (the cache missed the steps in
    between); that is accepted only when the auxiliary fields witness the
    intermediate HIRED step. Reversals and unwitnessed skips raise.

    Args:
        entity: Label used in the error
        prev: Cached status
        new: Observed status
        hired_freelancer / escrow_address: Observed auxiliary fields
    """
    if prev == new:
        return
    if new in JOB_TRANSITIONS[prev]:
        return
    if new not in reachable_statuses(prev):
        raise InconsistentTransition(entity, f"job status {prev.name} -> {new.name} is not allowed")
    if new in ESCROW_REQUIRED and not (hired_freelancer and escrow_address):
        raise InconsistentTransition(
            entity, f"job status {prev.name} -> {new.name} skips HIRED (no hired freelancer/escrow)"
        )


def check_job_escrow(entity: str, status: JobStatus, escrow_address: Optional[str]) -> None:
    if status in ESCROW_REQUIRED and not escrow_address:
        raise InconsistentTransition(entity, f"job in {status.name} has no escrow address")


def terminal_outcome(escrow: Escrow) -> EscrowPhase:
    """Which terminal branch an escrow took, reconstructed from its flags."""
    if escrow.disputed:
        return EscrowPhase.RESOLVED
    if escrow.delivered:
        return EscrowPhase.APPROVED
    return EscrowPhase.CANCEL_ACCEPTED


def escrow_phase(escrow: Escrow) -> EscrowPhase:
    if escrow.terminal:
        return terminal_outcome(escrow)
    if escrow.disputed:
        return EscrowPhase.DISPUTED
    if escrow.delivered:
        return EscrowPhase.DELIVERED
    if escrow.cancel_requested_by:
        return EscrowPhase.CANCEL_REQUESTED
    return EscrowPhase.FUNDED


def actionable_delivery(history: Sequence[Delivery]) -> Optional[Delivery]:
    """Only the highest version can be approved or disputed."""
    if not history:
        return None
    return max(history, key=lambda d: d.version)


def check_delivery_history(entity: str, prev: Sequence[Delivery], new: Sequence[Delivery]) -> None:
    """new must extend prev (same uri/version prefix) with strictly increasing versions."""
    versions: List[int] = [d.version for d in new]
    for a, b in zip(versions, versions[1:]):
        if b <= a:
            raise InconsistentTransition(entity, f"delivery versions not strictly increasing: {versions}")

    if len(new) < len(prev):
        raise InconsistentTransition(
            entity, f"delivery history shrank from {len(prev)} to {len(new)} entries"
        )
    for old, cur in zip(prev, new):
        if (old.uri, old.version) != (cur.uri, cur.version):
            raise InconsistentTransition(entity, f"delivery v{old.version} was rewritten")


def check_escrow(entity: str, escrow: Escrow) -> None:
    if escrow.delivered and not escrow.delivery_history:
        raise InconsistentTransition(entity, "escrow marked delivered with empty delivery history")

"""
lifecycle package

Job / Escrow domain model and the pure lifecycle interpreter.
"""
from .models import (
    Delivery,
    DirectOffer,
    Dispute,
    DisputeStatus,
    EntityKind,
    Escrow,
    EscrowPhase,
    FreelancerProfile,
    Job,
    JobStatus,
    Proposal,
)
from .state_machine import InconsistentTransition, actionable_delivery, escrow_phase, terminal_outcome

__all__ = [
    'Delivery',
    'DirectOffer',
    'Dispute',
    'DisputeStatus',
    'EntityKind',
    'Escrow',
    'EscrowPhase',
    'FreelancerProfile',
    'Job',
    'JobStatus',
    'Proposal',
    'InconsistentTransition',
    'actionable_delivery',
    'escrow_phase',
    'terminal_outcome',
]

"""
sync package

Reconciliation scheduler, long-lived subscriber and manual sync.
"""
from .errors import LeaseLost, ReconciliationError, ReconciliationInProgress, ReconciliationPartialFailure
from .manual import ManualSync, ManualSyncRequest
from .reconciler import ReconcileResult, ReconciliationScheduler
from .subscriber import SyncSubscriber

__all__ = [
    'LeaseLost',
    'ReconciliationError',
    'ReconciliationInProgress',
    'ReconciliationPartialFailure',
    'ManualSync',
    'ManualSyncRequest',
    'ReconcileResult',
    'ReconciliationScheduler',
    'SyncSubscriber',
]

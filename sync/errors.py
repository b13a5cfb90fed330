"""sync/errors.py

Reconciliation errors.
"""

from typing import Any, Dict, Optional


class ReconciliationError(RuntimeError):
    """Base class for scheduler errors."""

    def __init__(self, contract_name: str, message: str):
        super().__init__(f"{contract_name}: {message}")
        self.contract_name = contract_name
        self.message = message


class ReconciliationInProgress(ReconciliationError):
    """Another run holds the contract's lease."""


class ReconciliationPartialFailure(ReconciliationError):
    """A run failed; the checkpoint was not advanced and sync_errors was bumped."""

    def __init__(self, contract_name: str, message: str, sync_status: Optional[Dict[str, Any]] = None):
        super().__init__(contract_name, message)
        self.sync_status = sync_status or {}


class LeaseLost(ReconciliationError):
    """The run's lease expired and was taken by another owner mid-run."""

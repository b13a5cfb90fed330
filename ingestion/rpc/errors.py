"""
ingestion/rpc/errors.py

RPC error taxonomy and failure classification.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from web3.exceptions import Web3RPCError

RATE_LIMITED = "rate_limited"
TIMEOUT = "timeout"
OTHER = "other"

_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


class RpcError(Exception):
    """Base class for router errors."""


class RateLimited(RpcError):
    """Provider answered HTTP 429 or an explicit rate-limit message."""


class RpcTimeout(RpcError):
    """Attempt exceeded its time bound."""


@dataclass
class AttemptFailure:
    """One failed attempt inside execute_with_fallback."""
    attempt: int
    provider: str
    kind: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "provider": self.provider,
            "kind": self.kind,
            "error": self.error,
        }


class RpcExhausted(RpcError):
    """Every attempt failed. Callers treat this as "no fresh data now"."""

    def __init__(self, failures: List[AttemptFailure]):
        self.failures = failures
        last = failures[-1].error if failures else "no providers configured"
        super().__init__(f"all RPC providers failed after {len(failures)} attempts: {last}")

    @property
    def last_kind(self) -> Optional[str]:
        return self.failures[-1].kind if self.failures else None


def _status_code(exc: BaseException) -> Optional[int]:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None) or getattr(response, "status", None)
    if status is None:
        status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def classify_error(exc: BaseException) -> str:
    """
    Map an exception to RATE_LIMITED / TIMEOUT / OTHER.

    aiohttp errors (web3 async provider) carry the HTTP status on .status,
    httpx-style errors on .response.status_code.
    """
    if isinstance(exc, RateLimited):
        return RATE_LIMITED
    if isinstance(exc, (RpcTimeout, asyncio.TimeoutError, TimeoutError)):
        return TIMEOUT
    if _status_code(exc) == 429:
        return RATE_LIMITED
    message = str(exc).lower()
    if isinstance(exc, Web3RPCError) and exc.rpc_response:
        message += " " + str(exc.rpc_response.get("error", "")).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return RATE_LIMITED
    return OTHER

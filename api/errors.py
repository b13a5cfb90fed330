"""Sync-layer exceptions mapped to HTTP responses."""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ingestion.rpc.errors import RpcExhausted
from sync.errors import ReconciliationInProgress, ReconciliationPartialFailure

from .read_policy import CacheUnavailable

logger = logging.getLogger(__name__)


class EntityNotFoundError(Exception):
    """Entity does not exist on-chain (or in the cache)."""


_EXCEPTION_STATUS = {
    EntityNotFoundError: 404,
    ReconciliationInProgress: 409,
    ReconciliationPartialFailure: 500,
    RpcExhausted: 502,
    CacheUnavailable: 503,
}


def _make_handler(status_code: int):
    async def _handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error(f"[api] {request.url.path} -> {status_code}: {exc}")
        return JSONResponse(status_code=status_code, content={"success": False, "error": str(exc)})

    return _handler


def register_error_handlers(app: FastAPI) -> None:
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))

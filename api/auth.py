"""Bearer-token check for the trigger endpoints."""
from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


async def require_cron_secret(request: Request) -> None:
    """FastAPI dependency enforcing ``Authorization: Bearer <CRON_SECRET>``.

    Raises
    ------
    HTTPException(401)
        If the secret is not configured, or the token is missing or wrong.
    """
    secret = request.app.state.services.config.cron_secret
    if not secret:
        logger.warning("[api] CRON_SECRET is not set; all trigger requests are rejected")
        raise HTTPException(status_code=401, detail="Unauthorized")

    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:].strip() if auth_header.startswith("Bearer ") else ""
    if not token or not hmac.compare_digest(token, secret):
        raise HTTPException(status_code=401, detail="Unauthorized")

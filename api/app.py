"""FastAPI application factory.

The API process owns the cache writer (DuckDB allows one writer process), so
the reconciliation scheduler, manual sync and the optional subscriber all run
here.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from config.settings import SyncConfig, load_config
from sync.services import SyncServices

from .errors import register_error_handlers
from .read_policy import CachedReadService
from .routes import router

logger = logging.getLogger(__name__)


def create_app(
    services: Optional[SyncServices] = None,
    config: Optional[SyncConfig] = None,
    run_subscriber: bool = False,
) -> FastAPI:
    """
    Args:
        services: Pre-built pipeline (tests); built from config otherwise
        config: Settings; load_config() when omitted
        run_subscriber: Start the polling subscriber with the app
    """
    if services is None:
        services = SyncServices.from_config(config or load_config())

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        task = None
        subscriber = None
        if run_subscriber:
            subscriber = services.subscriber()
            task = asyncio.create_task(subscriber.start(install_signal_handlers=False))
            logger.info("[api] subscriber started")
        try:
            yield
        finally:
            if subscriber is not None:
                await subscriber.stop()
                await task
            services.close()
            logger.info("[api] shutdown complete")

    app = FastAPI(title="Jobs Chain Sync", lifespan=_lifespan)
    app.state.services = services
    app.state.read_service = CachedReadService(services.store.reader(), services.reader, services.config)
    register_error_handlers(app)
    app.include_router(router)
    return app

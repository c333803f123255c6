"""FastAPI application factory for the monitoring engine."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from secwatch import __version__
from secwatch.api.config import ServerConfig
from secwatch.api.routers import alerts, configuration, dashboard, events, health
from secwatch.monitor import SecurityMonitor

logger = logging.getLogger(__name__)


def create_app(
    monitor: SecurityMonitor | None = None,
    config: ServerConfig | None = None,
) -> FastAPI:
    """Build and return the FastAPI application.

    When *monitor* is not given one is built from the config file named by
    *config* (or env defaults). Background sweeps start with the app and the
    monitor is stopped, draining notifications, on shutdown.
    """
    if config is None:
        config = ServerConfig.from_env()
    if monitor is None:
        monitor = SecurityMonitor.from_file(config.config_file or None)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if config.start_background:
            monitor.start()
        try:
            yield
        finally:
            monitor.stop()

    app = FastAPI(
        title="Secwatch",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.monitor = monitor

    # --- CORS (dev mode only) ---
    if config.dev_mode:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:5173"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    events.init_router(monitor)
    alerts.init_router(monitor)
    configuration.init_router(monitor)
    dashboard.init_router(monitor)
    health.init_router(monitor)

    app.include_router(events.router)
    app.include_router(alerts.router)
    app.include_router(configuration.router)
    app.include_router(dashboard.router)
    app.include_router(health.router)

    logger.info("API ready with %s store", monitor.get_config().store)
    return app

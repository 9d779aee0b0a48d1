"""FastAPI application wiring for convosync.

The app owns one :class:`~convosync.sync.engine.ReconciliationEngine` for its
whole lifetime: the lifespan hook primes and starts it, and stops it (timers,
refresh loop, push connection) on shutdown. Routers read it from
``app.state.engine``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .config import SyncSettings, get_settings
from .providers.evolution import EvolutionClient
from .providers.record_store import HttpRecordStore, InMemoryRecordStore
from .providers.socketio_transport import socketio_connector
from .routers import conversations, sync, webhooks
from .sync.engine import ReconciliationEngine

load_dotenv()

logger = logging.getLogger(__name__)


def build_engine(settings: SyncSettings | None = None) -> ReconciliationEngine:
    """Assemble the engine from configuration."""
    settings = settings or get_settings()
    if settings.store_base_url:
        store = HttpRecordStore.from_settings(settings)
    else:
        logger.warning("STORE_BASE_URL not set; using an in-memory record store")
        store = InMemoryRecordStore(chat_record_type=settings.chat_record_type)
    connector = socketio_connector(settings) if settings.push_configured else None
    return ReconciliationEngine(
        store,
        EvolutionClient.from_settings(settings),
        settings=settings,
        connector=connector,
    )


def create_app(
    engine_factory: Callable[[], ReconciliationEngine] = build_engine,
    *,
    autostart: bool | None = None,
) -> FastAPI:
    """Create the API. ``autostart=None`` starts the engine only when a provider is configured."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine = engine_factory()
        app.state.engine = engine
        start = bool(engine.settings.provider_base_url) if autostart is None else autostart
        if start:
            await engine.start()
        elif autostart is False:
            logger.info("Sync engine autostart disabled")
        else:
            logger.warning("Sync engine not started: provider base URL not configured")
        try:
            yield
        finally:
            await engine.stop()
            app.state.engine = None

    app = FastAPI(title="convosync", version=__version__, lifespan=lifespan)
    init_logging(app)
    app.include_router(conversations.router)
    app.include_router(sync.router)
    app.include_router(webhooks.router)

    @app.get("/api/health")
    async def health():
        """Liveness and readiness check with a minimal JSON body."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        """Return version information for the application."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    return app


app = create_app()

"""Reconciler service entry point.

Initializes all components and starts the server:
  Settings -> Database -> EventBus -> CompletionService -> Coordinator -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import uuid4

import uvicorn
from starlette.applications import Starlette

from mwf.completion import AnthropicCompletionService
from mwf.config import Settings
from mwf.events import Event, EventBus
from mwf.reconciler import ReconciliationCoordinator, SqlReconcilerStore
from mwf.storage.database import Database
from mwf.storage.models import NotificationEvent

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. Database - connection pool (+ schema on first run)
    2. EventBus - notifications, optional DB audit trail
    3. AnthropicCompletionService - LLM seam with circuit breaker
    4. ReconciliationCoordinator - everything else
    """
    database = Database(settings)
    await database.create_schema()
    await database.connect()

    bus = None
    if settings.event_bus_enabled:
        bus = EventBus(max_queue=settings.event_queue_size)

        if settings.persist_events:
            async def persist_to_db(event: Event) -> None:
                async with database.session() as session:
                    session.add(
                        NotificationEvent(
                            id=uuid4(),
                            session_id=event.session_id,
                            event_type=event.type,
                            data={**event.data},
                            created_at=event.timestamp,
                        )
                    )
                    await session.commit()

            bus.set_db_persister(persist_to_db)
        await bus.start()

    completion = AnthropicCompletionService(settings)
    store = SqlReconcilerStore(database)
    coordinator = ReconciliationCoordinator(store, settings, completion=completion, publisher=bus)

    if settings.recover_stalled_on_start:
        try:
            await coordinator.recover_stalled()
        except Exception:
            logger.warning("Stalled-direction recovery failed (non-fatal)", exc_info=True)

    return {
        "database": database,
        "bus": bus,
        "completion": completion,
        "coordinator": coordinator,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down reconciler...")

    coordinator = components.get("coordinator")
    if coordinator:
        await coordinator.close()

    completion = components.get("completion")
    if completion:
        await completion.close()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Reconciler shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info("Reconciler started (max %d analysis cycles)", settings.max_analysis_cycles)
        yield
        await shutdown_components(components)

    from mwf.api.rest import create_app

    return create_app(
        coordinator=_lazy_component(components, "coordinator"),
        database=_lazy_component(components, "database"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized (lifespan hasn't started)")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting reconciler, model %s", settings.model)
    if not settings.database_url:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set; "
            "every analysis will fail open"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()

"""Parley executor service entry point.

Initializes all components and starts the server:
  Settings -> Database -> SessionStore -> EventBus -> Executor
  -> ContextOrchestrator -> TurnRunner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from parley.api.runner import TurnRunner
from parley.config import Settings
from parley.context.compactor import ExecutorSummarizer
from parley.context.orchestrator import ContextOrchestrator
from parley.events import EventBus
from parley.executor.cli import ClaudeCliExecutor
from parley.handlers.session_monitor import SessionCleanupMonitor
from parley.handlers.telemetry import TelemetryRecorder
from parley.queue import RequestQueue
from parley.storage.database import Database
from parley.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. Database - SQLite file, tables created on connect
    2. SessionStore - sessions + transcripts
    3. EventBus + TelemetryRecorder + SessionCleanupMonitor
    4. ClaudeCliExecutor + ExecutorSummarizer
    5. ContextOrchestrator - per-turn context pipeline
    6. TurnRunner - store <-> orchestrator glue
    """
    database = Database(settings)
    await database.connect()
    store = SessionStore(database, settings)

    bus = EventBus()
    telemetry = TelemetryRecorder(bus)
    session_monitor = SessionCleanupMonitor(store, bus, settings)
    await bus.start()
    await session_monitor.start()

    executor = ClaudeCliExecutor(settings)
    summarizer = ExecutorSummarizer(executor)
    orchestrator = ContextOrchestrator(settings, executor, summarizer, bus=bus)
    runner = TurnRunner(orchestrator, store)

    return {
        "database": database,
        "store": store,
        "bus": bus,
        "telemetry": telemetry,
        "session_monitor": session_monitor,
        "executor": executor,
        "orchestrator": orchestrator,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Parley...")

    session_monitor = components.get("session_monitor")
    if session_monitor:
        await session_monitor.stop()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Parley shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the executor service Starlette app.

    Uses Starlette lifespan for component lifecycle management.
    """
    components: dict = {}
    queue = RequestQueue(settings.max_concurrent)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        nonlocal components
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Parley executor listening on %s:%d (max_concurrent=%d)",
            settings.host, settings.port, settings.max_concurrent,
        )
        yield

        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from parley.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        store=_lazy_component(components, "store"),
        queue=queue,
        settings=settings,
        bus=_lazy_component(components, "bus"),
        telemetry=_lazy_component(components, "telemetry"),
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
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
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

    logger.info("Starting Parley executor service")
    logger.info("CLI: %s (tools: %s)", settings.claude_cli_path, settings.allowed_tools)
    logger.info("Database: %s", settings.db_url)
    logger.info(
        "Context: soft=%d hard=%d tokens, chunk=%d chars",
        settings.context_soft_limit, settings.context_hard_limit, settings.max_chunk_size,
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

"""
Main application entry point for Sprint Watch.

This module sets up the FastAPI application, configures logging, and starts
the polling orchestrator in the background.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request

from . import __version__
from .config import Settings, settings
from .notifications import create_notification_engine
from .polling.orchestrator import PollingOrchestrator
from .state.manager import StateBackendFactory
from .state.tracker_state import TrackerStateStore
from .status_api import StatusAPI
from .trackers import TrackerRegistry


def setup_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level), format="%(message)s"
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def create_orchestrator(app_settings: Settings) -> PollingOrchestrator:
    """Build the state store, tracker registry and orchestrator from settings."""
    backend = StateBackendFactory.create_backend(
        app_settings.state_backend, app_settings.state_file
    )
    store = TrackerStateStore(backend, app_settings.polling_config)
    await store.load()

    registry = TrackerRegistry(
        app_settings.trackers_file, default_base_url=app_settings.rally_base_url
    )
    registry.load()

    # State migrated from a single-tracker document belongs to the only tracker
    unowned = [t.id for t in registry.list_trackers() if not store.has_tracker(t.id)]
    if len(unowned) == 1:
        store.adopt_legacy_state(unowned[0])

    # Trackers and state are stored separately; drop state nobody owns
    for tracker_id in list(store.document.trackers):
        if tracker_id not in registry:
            store.remove_tracker(tracker_id)

    notification_config = app_settings.notification_config
    engine = create_notification_engine(
        notification_config.teams_webhook_url, notification_config.summary_threshold
    )

    return PollingOrchestrator(
        registry,
        store,
        engine,
        app_settings.rally_config,
        app_settings.retry_config,
        app_settings.polling_config,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    logger = structlog.get_logger()

    logger.info("Starting Sprint Watch")
    logger.info(
        "Configuration loaded",
        rally_base_url=settings.rally_base_url,
        state_backend=settings.state_backend,
        has_credentials=settings.has_credentials,
        debug=settings.debug,
    )

    orchestrator = await create_orchestrator(settings)
    app.state.orchestrator = orchestrator

    if not settings.has_credentials:
        logger.warning("No Rally API key configured, polling waits for credentials")

    orchestrator.polling_task = asyncio.create_task(orchestrator.start_polling())

    yield

    logger.info("Shutting down Sprint Watch")
    await orchestrator.aclose()


# Create FastAPI application
app = FastAPI(
    title="Sprint Watch",
    description="Change tracking for Rally sprint stories",
    version=__version__,
    lifespan=lifespan,
)

# Include status and control routes
status_api = StatusAPI()
app.include_router(status_api.router, tags=["trackers"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "Sprint Watch", "version": __version__, "status": "active"}


@app.get("/health")
async def health_check(request: Request) -> dict[str, object]:
    """Health check endpoint."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        return {"status": "starting"}

    state_healthy = await orchestrator.store.backend.health_check()
    return {
        "status": "healthy" if state_healthy and not orchestrator.halted else "degraded",
        "polling": orchestrator.is_running(),
        "halted": orchestrator.halted,
        "state_backend": state_healthy,
        "trackers": len(orchestrator.registry),
    }


def main() -> None:
    """Main entry point."""
    import uvicorn

    setup_logging()
    logger = structlog.get_logger()

    logger.info(
        "Starting server", host=settings.host, port=settings.port, debug=settings.debug
    )

    uvicorn.run(
        "sprint_watch.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,  # We handle logging ourselves
    )


if __name__ == "__main__":
    main()

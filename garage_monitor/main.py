"""
Garage Door Monitor - API

FastAPI application that provides:
- State report ingestion from the door sensor
- Monitoring orchestration status and termination
- Entity state lookup

Durable state (door status and workflow history) lives in a local SQLite
database; monitoring instances left running by a previous process are
resumed on startup.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import Awaitable, Callable

import httpx
from fastapi import FastAPI

from .common.config import MonitorSettings, load_settings
from .common.logging_setup import get_service_logger
from .routers import entities, instances, status
from .services.entity.store import EntityStore
from .services.ingestion import IngestionService
from .services.notifications.sms import send_text_message
from .services.orchestration.engine import OrchestrationEngine
from .services.orchestration.workflow import register_door_monitor
from .storage.local_db import LocalDatabase

logger = get_service_logger("api")

VERSION = "1.0.0"


def create_app(
    settings: MonitorSettings | None = None,
    clock: Callable[[], datetime] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use; loaded from the environment at startup if None
        clock: Engine clock override (tests)
        sleep: Engine timer sleep override (tests)
        http_client: Client used for the SMS activity (tests pass a mock transport)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
        - Open the database, recover unapplied entity signals
        - Register the door monitor and resume unfinished instances

        Shutdown:
        - Stop instances (they resume on next start)
        - Apply queued entity signals, then stop entity workers
        """
        app_settings = settings or load_settings()

        db = LocalDatabase(app_settings.db_path)
        entity_store = EntityStore(db)
        entity_store.recover_signals()

        engine = OrchestrationEngine(db, entity_store, clock=clock, sleep=sleep)
        register_door_monitor(
            engine,
            app_settings,
            partial(send_text_message, app_settings, http_client),
        )

        app.state.settings = app_settings
        app.state.entities = entity_store
        app.state.engine = engine
        app.state.ingestion = IngestionService(app_settings, entity_store, engine)

        resumed = await engine.resume_pending()
        logger.info(
            f"Garage Door Monitor API started (entity {app_settings.entity_id}, "
            f"delay {app_settings.timer_delay_minutes} min, max retries {app_settings.max_retries}, "
            f"resumed {resumed})"
        )

        yield

        logger.info("Shutting down API")
        await engine.shutdown()
        await entity_store.drain()
        await entity_store.close()

    app = FastAPI(
        title="Garage Door Monitor API",
        description="""
        Watches the garage door sensor and texts you while the door stays open.

        ## Features
        - **Status**: Sensor reports open/closed
        - **Instances**: Poll or terminate a monitoring workflow
        - **Entities**: Read the stored door status
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    # ============================================
    # INCLUDE ROUTERS
    # ============================================

    app.include_router(
        status.router,
        prefix="/api/status",
        tags=["Status"]
    )

    app.include_router(
        instances.router,
        prefix="/api/instances",
        tags=["Instances"]
    )

    app.include_router(
        entities.router,
        prefix="/api/entities",
        tags=["Entities"]
    )

    # ============================================
    # ROOT ENDPOINTS
    # ============================================

    @app.get("/", tags=["Health"])
    async def root():
        """Basic API information."""
        return {
            "name": "Garage Door Monitor API",
            "version": VERSION,
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check with the current door status."""
        app_settings: MonitorSettings = app.state.settings
        door_state = await app.state.entities.read(app_settings.entity_id)
        return {
            "status": "healthy",
            "door": door_state,
            "version": VERSION,
        }

    return app


app = create_app()

"""
Service Dependencies

FastAPI dependencies that hand routers the services created in the
application lifespan, plus the optional function-key check on ingress.

Usage:
    from garage_monitor.dependencies.services import get_engine

    @router.get("/{instance_id}")
    async def status(instance_id: str, engine = Depends(get_engine)):
        ...
"""

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, Request, status

from ..common.config import MonitorSettings
from ..services.entity.store import EntityStore
from ..services.ingestion import IngestionService
from ..services.orchestration.engine import OrchestrationEngine


def get_settings(request: Request) -> MonitorSettings:
    return request.app.state.settings


def get_entities(request: Request) -> EntityStore:
    return request.app.state.entities


def get_engine(request: Request) -> OrchestrationEngine:
    return request.app.state.engine


def get_ingestion(request: Request) -> IngestionService:
    return request.app.state.ingestion


async def verify_function_key(
    x_functions_key: Optional[str] = Header(None),
    code: Optional[str] = Query(None, description="Function key (alternative to the x-functions-key header)"),
    settings: MonitorSettings = Depends(get_settings),
) -> None:
    """
    Require the configured function key, if one is set.

    The key may come from the x-functions-key header or the code query
    parameter. With no key configured every request passes.
    """
    expected = settings.function_key
    if not expected:
        return

    provided = x_functions_key or code or ""
    if not secrets.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid function key",
        )

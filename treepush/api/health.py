"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from treepush.api.deps import get_settings, get_store
from treepush.config import Settings
from treepush.services.store import KeyValueStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_PROBE_KEY = "health:probe"


class HealthResponse(BaseModel):
    status: str
    version: str
    store: str
    github: str


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    store: Annotated[KeyValueStore, Depends(get_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers."""
    store_status = "ok"
    try:
        await store.set(_PROBE_KEY, True, 60)
        await store.get(_PROBE_KEY)
    except Exception:
        logger.warning("Health check store probe failed", exc_info=True)
        store_status = "error"

    github_status = "not_configured" if settings.missing_github_settings() else "configured"
    return HealthResponse(
        status="ok" if store_status == "ok" else "degraded",
        version="0.1.0",
        store=store_status,
        github=github_status,
    )

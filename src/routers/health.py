"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings

router = APIRouter(tags=["system"])
logger = logging.getLogger("healthsync.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Reports whether the sync engine is initialized and its background task
    is running.
    """
    settings = get_settings()
    orchestrator = getattr(request.app.state, "orchestrator", None)
    engine_ok = orchestrator is not None
    return {
        "status": "healthy" if engine_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "engine": "ready" if engine_ok else "unavailable",
        "background_sync": bool(orchestrator and orchestrator.running),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

"""healthsync API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Callable
from zoneinfo import ZoneInfo

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import Settings, get_settings
from src.healthsync.adapters import resolve_adapters
from src.healthsync.base import local_now
from src.healthsync.config_loader import get_sync_config
from src.healthsync.sync.orchestrator import SyncOrchestrator
from src.middleware.security import SecurityHeadersMiddleware
from src.routers import health, sync
from src.services.scoring import HttpScoringBackend
from src.services.state_store import create_state_store

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthsync")


def device_clock(settings: Settings) -> Callable[[], datetime]:
    """Clock returning tz-aware local time in the configured device timezone."""
    tz = ZoneInfo(settings.device_timezone) if settings.device_timezone else None
    return lambda: local_now(tz)


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info("Starting healthsync API v%s [%s]", settings.app_version, settings.environment)

    http_client = httpx.AsyncClient(timeout=settings.http_timeout_s)
    store = await create_state_store(settings)
    orchestrator = SyncOrchestrator(
        store=store,
        backend=HttpScoringBackend.from_settings(settings, http_client=http_client),
        adapters=resolve_adapters(settings, http_client=http_client),
        get_current_user_id=lambda: settings.user_id,
        config=get_sync_config(),
        clock=device_clock(settings),
        state_key=settings.state_key,
    )
    await orchestrator.init()
    if settings.default_provider and not orchestrator.state.active_provider:
        orchestrator.state.active_provider = settings.default_provider
    await orchestrator.restore_provider_connection()
    if settings.background_sync:
        orchestrator.start()
    app.state.orchestrator = orchestrator

    yield

    await orchestrator.stop()
    app.state.orchestrator = None
    await store.close()
    await http_client.aclose()
    logger.info("healthsync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="healthsync API",
        description=(
            "Health-metrics sync engine — provider connections, daily activity "
            "reconciliation, backfill, streaks and ring events."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Middleware (outermost first) ----------

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS innermost so it sees preflight requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside the v1 prefix) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(sync.router, prefix="/api/v1")

    return app


app = create_app()

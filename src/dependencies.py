"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.healthsync.sync.orchestrator import SyncOrchestrator


async def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Return the orchestrator created by the app lifespan."""
    orchestrator: SyncOrchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return orchestrator


# Annotated shortcuts for route signatures
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]

"""Endpoints for provider connections, sync runs, goals, metrics and streaks."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import Orchestrator
from src.healthsync.adapters import KNOWN_PROVIDERS, UnavailableAdapter
from src.models.sync import (
    ConnectResult,
    DailyMetricsRead,
    GoalsRead,
    GoalsUpdate,
    MilestoneRead,
    ProviderStatus,
    StreakRead,
    SyncRunRequest,
    SyncRunResult,
    SyncStatusRead,
    WeightGoalUpdate,
)

router = APIRouter(prefix="/sync", tags=["sync"])


# ---------- Providers ----------

@router.post("/providers/{provider_id}/connect", response_model=ConnectResult)
async def connect_provider(provider_id: str, orchestrator: Orchestrator) -> Any:
    if provider_id not in KNOWN_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{provider_id}'")
    connected = await orchestrator.connect_provider(provider_id)
    return ConnectResult(
        provider_id=provider_id,
        connected=connected,
        error=None if connected else orchestrator.last_sync_error,
    )


@router.delete("/providers/{provider_id}", status_code=204)
async def disconnect_provider(provider_id: str, orchestrator: Orchestrator) -> None:
    if provider_id not in KNOWN_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{provider_id}'")
    await orchestrator.disconnect_provider(provider_id)


# ---------- Sync ----------

@router.post("/run", response_model=SyncRunResult)
async def run_sync(orchestrator: Orchestrator, body: SyncRunRequest | None = None) -> Any:
    body = body or SyncRunRequest()
    result = await orchestrator.sync_now(
        user_id=body.user_id,
        show_progress_indicator=body.show_progress_indicator,
    )
    return SyncRunResult(
        provider_id=result.provider_id,
        status=result.status,
        days_synced=result.days_synced,
        days_failed=result.days_failed,
        error=result.error,
        synced_at=result.synced_at,
    )


@router.get("/status", response_model=SyncStatusRead)
async def sync_status(orchestrator: Orchestrator) -> Any:
    providers = []
    for provider_id, display_name in KNOWN_PROVIDERS.items():
        adapter = orchestrator.adapters.get(provider_id)
        connection = orchestrator.state.connection(provider_id)
        providers.append(
            ProviderStatus(
                provider_id=provider_id,
                display_name=display_name,
                available=adapter is not None and not isinstance(adapter, UnavailableAdapter),
                connected=connection.connected,
                last_sync_timestamp=connection.last_sync_timestamp,
            )
        )
    return SyncStatusRead(
        active_provider=orchestrator.active_provider_id,
        is_syncing=orchestrator.is_syncing,
        last_sync_error=orchestrator.last_sync_error,
        providers=providers,
    )


# ---------- Metrics ----------

@router.get("/metrics", response_model=DailyMetricsRead)
async def current_metrics(orchestrator: Orchestrator) -> Any:
    metrics = orchestrator.get_current_metrics()
    if metrics is None:
        raise HTTPException(status_code=404, detail="No metrics synced yet")
    return metrics.to_json()


# ---------- Goals ----------

@router.get("/goals", response_model=GoalsRead)
async def get_goals(orchestrator: Orchestrator) -> Any:
    return orchestrator.get_goals().to_json()


@router.patch("/goals", response_model=GoalsRead)
async def update_goals(body: GoalsUpdate, orchestrator: Orchestrator) -> Any:
    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    goals = await orchestrator.update_goals(updates)
    return goals.to_json()


# ---------- Weight ----------

@router.post("/weight")
async def sync_weight(orchestrator: Orchestrator) -> dict:
    weight = await orchestrator.sync_weight()
    return weight.to_json()


@router.put("/weight-goal", status_code=204)
async def set_weight_goal(body: WeightGoalUpdate, orchestrator: Orchestrator) -> None:
    await orchestrator.set_weight_goal(body.goal_kg)


# ---------- Streaks & milestones ----------

@router.get("/streak", response_model=StreakRead)
async def get_streak(orchestrator: Orchestrator) -> Any:
    state = orchestrator.state.streak
    result = orchestrator.get_streak_result()
    upcoming = result.next_milestone if result else None
    return StreakRead(
        current_streak_days=state.current_streak_days,
        longest_streak_days=state.longest_streak_days,
        next_milestone_days=upcoming.days if upcoming else None,
        days_to_next_milestone=result.days_to_next if result else None,
    )


@router.get("/milestones", response_model=list[MilestoneRead])
async def pending_milestones(orchestrator: Orchestrator) -> Any:
    return [m.to_json() for m in orchestrator.get_pending_milestones()]


@router.delete("/milestones", status_code=204)
async def clear_milestones(orchestrator: Orchestrator) -> None:
    await orchestrator.clear_pending_milestones()

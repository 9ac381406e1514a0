"""healthsync: health-metrics synchronization and reconciliation engine.

Pulls daily activity from a health provider, reconciles it into one canonical
record per day, backfills missed days into the scoring service, and derives
streaks, milestones, rings-closed events and personal records.

Subpackages:
    adapters/ — Provider adapters (Apple Health bridge, Oura) and the registry
    sync/     — Backfill engine, orchestrator, dedup helpers

Core modules:
    base          — HealthProviderAdapter ABC and canonical data models
    reconciler    — Summary-first metric reconciliation and unit normalization
    deadline      — Timeout wrapper with fallback values
    streaks       — Activity streaks and milestones
    events        — Rings-closed detection and personal records
    state         — Persisted engine state sections
    config_loader — Load/validate/hot-reload sync_config.yaml
    errors        — Error taxonomy
"""

from src.healthsync.base import (
    ActivitySummary,
    DailyMetrics,
    DayWindow,
    GoalSet,
    HealthProviderAdapter,
    Quantity,
    WorkoutSession,
)
from src.healthsync.config_loader import SyncConfig, get_sync_config

__all__ = [
    "HealthProviderAdapter",
    "ActivitySummary",
    "DailyMetrics",
    "DayWindow",
    "GoalSet",
    "Quantity",
    "WorkoutSession",
    "SyncConfig",
    "get_sync_config",
]

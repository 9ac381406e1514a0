"""Inert adapter standing in for a provider that cannot run here."""

from __future__ import annotations

from datetime import datetime

from src.healthsync.base import (
    ActivitySummary,
    DayWindow,
    HealthProviderAdapter,
    Quantity,
    WorkoutSession,
)


class UnavailableAdapter(HealthProviderAdapter):
    """Placeholder returned by the capability probe.

    ``connect()`` always returns False and every feed is empty, so the
    orchestrator can hold one adapter per known provider without checking
    availability at each call site.

    Attributes:
        reason: Human-readable explanation, surfaced as ``last_sync_error``.
    """

    DISPLAY_NAME = "Unavailable provider"

    def __init__(self, provider_id: str, reason: str) -> None:
        super().__init__()
        self.PROVIDER_ID = provider_id
        self.reason = reason

    def is_available(self) -> bool:
        return False

    async def request_access(self) -> bool:
        return False

    async def fetch_activity_summary(self, window: DayWindow) -> ActivitySummary | None:
        return None

    async def fetch_active_energy(self, window: DayWindow) -> Quantity:
        return Quantity.zero("kcal")

    async def fetch_exercise_time(self, window: DayWindow) -> Quantity:
        return Quantity.zero("min")

    async def fetch_stand_samples(self, window: DayWindow) -> list[Quantity]:
        return []

    async def fetch_steps(self, window: DayWindow) -> float:
        return 0.0

    async def fetch_distance(self, window: DayWindow) -> Quantity:
        return Quantity.zero("m")

    async def fetch_heart_rate_samples(self, window: DayWindow) -> list[float]:
        return []

    async def fetch_workouts(self, start: datetime, end: datetime) -> list[WorkoutSession]:
        return []

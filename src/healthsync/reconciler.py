"""Metrics reconciler: assemble one canonical DailyMetrics from an adapter.

Resolution order for the three ring values:

1. The provider's authoritative activity summary (what its own app shows).
2. If the summary is missing or invalid, fallback aggregation of raw samples
   (active energy, exercise time, stand samples), fetched concurrently.

Steps, distance, heart rate and workout count are always sample-derived.
Every sub-fetch runs under its own deadline and degrades to zero on timeout
or error, so a slow or failing feed never blocks the others.

Unit normalization happens here and nowhere else: energy → kcal,
durations → minutes, distance → meters, weight → kilograms.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Callable

from src.healthsync.base import (
    ActivitySummary,
    DailyMetrics,
    DayWindow,
    GoalSet,
    HealthProviderAdapter,
    Quantity,
    local_now,
)
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.deadline import with_deadline
from src.healthsync.errors import PermissionDenied, ProviderUnavailable

logger = logging.getLogger("healthsync.reconciler")

# Minimum standing seconds in an hour bucket for it to count as a stand hour.
STAND_HOUR_MIN_SECONDS = 60.0


# ---------------------------------------------------------------------------
# Unit normalization
# ---------------------------------------------------------------------------

_ENERGY_TO_KCAL = {"kcal": 1.0, "cal": 1.0, "kj": 1 / 4.184, "j": 1 / 4184.0}
_DURATION_TO_MINUTES = {"min": 1.0, "s": 1 / 60.0, "ms": 1 / 60000.0, "h": 60.0}
_DISTANCE_TO_METERS = {"m": 1.0, "km": 1000.0, "mi": 1609.34, "ft": 0.3048, "yd": 0.9144}
_WEIGHT_TO_KG = {"kg": 1.0, "g": 0.001, "lb": 0.45359237, "st": 6.35029318}
_DURATION_TO_SECONDS = {unit: factor * 60.0 for unit, factor in _DURATION_TO_MINUTES.items()}


def _convert(quantity: Quantity, table: dict[str, float], kind: str) -> float:
    factor = table.get(quantity.unit.lower())
    if factor is None:
        raise ValueError(f"Unknown {kind} unit {quantity.unit!r}")
    return quantity.value * factor


def energy_to_kcal(quantity: Quantity) -> float:
    return _convert(quantity, _ENERGY_TO_KCAL, "energy")


def duration_to_minutes(quantity: Quantity) -> float:
    return _convert(quantity, _DURATION_TO_MINUTES, "duration")


def distance_to_meters(quantity: Quantity) -> float:
    return _convert(quantity, _DISTANCE_TO_METERS, "distance")


def weight_to_kg(quantity: Quantity) -> float:
    return _convert(quantity, _WEIGHT_TO_KG, "weight")


def count_stand_hours(samples: list[Quantity]) -> int:
    """Count hour buckets with at least one minute of standing."""
    return sum(
        1
        for sample in samples
        if _convert(sample, _DURATION_TO_SECONDS, "duration") >= STAND_HOUR_MIN_SECONDS
    )


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class MetricsReconciler:
    """Produce a DailyMetrics snapshot for one adapter and one local day.

    Args:
        adapter: A connected (or connectable) provider adapter.
        config:  Engine config; supplies per-fetch deadlines.
        clock:   Returns the current tz-aware local time.
    """

    def __init__(
        self,
        adapter: HealthProviderAdapter,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._adapter = adapter
        self._config = config or get_sync_config()
        self._clock = clock or local_now

    async def reconcile(
        self, day: date, stored_goals: GoalSet | None = None
    ) -> DailyMetrics | None:
        """Reconcile one day.

        Returns:
            A DailyMetrics (zero-valued when the provider simply has no data),
            or None when the adapter cannot be reached at all.
        """
        adapter = self._adapter
        deadlines = self._config.deadlines
        stored = stored_goals or self._config.goals

        if not adapter.authorized:
            try:
                connected = await with_deadline(
                    adapter.connect(), deadlines.connect, False, label=f"{adapter.PROVIDER_ID}.connect"
                )
            except (ProviderUnavailable, PermissionDenied) as exc:
                logger.warning("%s: cannot reconcile %s (%s)", adapter.PROVIDER_ID, day, exc.reason)
                return None
            except Exception as exc:
                logger.warning("%s: connect failed before reconciling %s: %s", adapter.PROVIDER_ID, day, exc)
                return None
            if not connected:
                logger.warning("%s: not connected, skipping %s", adapter.PROVIDER_ID, day)
                return None

        now = self._clock()
        window = DayWindow.for_day(day, now)

        try:
            summary = await with_deadline(
                adapter.fetch_activity_summary(window),
                deadlines.summary,
                None,
                label=f"{adapter.PROVIDER_ID}.summary",
            )
        except ProviderUnavailable as exc:
            logger.warning("%s: unavailable during reconcile (%s)", adapter.PROVIDER_ID, exc.reason)
            return None
        except Exception as exc:
            logger.warning("%s: activity summary failed for %s: %s", adapter.PROVIDER_ID, day, exc)
            summary = None

        if summary is not None and not summary.is_valid():
            logger.warning("%s: invalid activity summary for %s, falling back to samples", adapter.PROVIDER_ID, day)
            summary = None

        if summary is not None:
            calories, exercise, stand = self._rings_from_summary(summary)
            source = "summary"
        else:
            calories, exercise, stand = await self._rings_from_samples(window)
            source = "samples"

        steps, distance, hr_samples, workouts = await asyncio.gather(
            self._guard(adapter.fetch_steps(window), 0.0, "steps"),
            self._guard(adapter.fetch_distance(window), Quantity.zero("m"), "distance"),
            self._guard(adapter.fetch_heart_rate_samples(window), [], "heart_rate"),
            self._guard(adapter.fetch_workout_count(window), 0, "workout_count", deadlines.workouts),
        )

        goals = self._goals_from_summary(summary, stored) if summary is not None else None

        metrics = DailyMetrics(
            date=day,
            active_calories=int(round(calories)),
            exercise_minutes=int(round(exercise)),
            stand_hours=int(stand),
            steps=int(round(steps or 0)),
            distance_meters=round(self._safe_convert(distance, distance_to_meters, "distance"), 1),
            heart_rate_avg=int(round(_mean([hr for hr in hr_samples if hr and hr > 0]))),
            workouts_completed=int(workouts or 0),
            last_updated=now,
            provider=adapter.PROVIDER_ID,
            source=source,
            goals=goals,
        )
        logger.debug("%s: reconciled %s via %s: %s", adapter.PROVIDER_ID, day, source, metrics)
        return metrics

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _guard(self, awaitable, fallback, label: str, timeout_s: float | None = None):
        return await with_deadline(
            awaitable,
            timeout_s if timeout_s is not None else self._config.deadlines.sample,
            fallback,
            label=f"{self._adapter.PROVIDER_ID}.{label}",
            recover_errors=True,
        )

    def _safe_convert(self, quantity: Quantity, convert: Callable[[Quantity], float], kind: str) -> float:
        try:
            return max(0.0, convert(quantity))
        except ValueError as exc:
            logger.warning("%s: dropping %s value (%s)", self._adapter.PROVIDER_ID, kind, exc)
            return 0.0

    def _rings_from_summary(self, summary: ActivitySummary) -> tuple[float, float, float]:
        return (
            self._safe_convert(summary.active_energy, energy_to_kcal, "energy"),
            self._safe_convert(summary.exercise_time, duration_to_minutes, "exercise"),
            summary.stand_hours,
        )

    async def _rings_from_samples(self, window: DayWindow) -> tuple[float, float, float]:
        energy, exercise, stand_samples = await asyncio.gather(
            self._guard(self._adapter.fetch_active_energy(window), Quantity.zero("kcal"), "active_energy"),
            self._guard(self._adapter.fetch_exercise_time(window), Quantity.zero("min"), "exercise_time"),
            self._guard(self._adapter.fetch_stand_samples(window), [], "stand"),
        )
        try:
            stand = count_stand_hours(stand_samples)
        except ValueError as exc:
            logger.warning("%s: dropping stand samples (%s)", self._adapter.PROVIDER_ID, exc)
            stand = 0
        return (
            self._safe_convert(energy, energy_to_kcal, "energy"),
            self._safe_convert(exercise, duration_to_minutes, "exercise"),
            stand,
        )

    def _goals_from_summary(self, summary: ActivitySummary, stored: GoalSet) -> GoalSet | None:
        move = exercise = None
        try:
            if summary.move_goal is not None:
                move = energy_to_kcal(Quantity(summary.move_goal, summary.active_energy.unit))
            if summary.exercise_goal is not None:
                exercise = duration_to_minutes(Quantity(summary.exercise_goal, summary.exercise_time.unit))
        except ValueError as exc:
            logger.warning("%s: ignoring provider goals (%s)", self._adapter.PROVIDER_ID, exc)
            return None
        return GoalSet.from_provider(move, exercise, summary.stand_goal, steps=stored.steps)

"""Oura Ring API v2 adapter.

Uses an already-acquired access token (personal access token or an OAuth2
token obtained elsewhere); the token exchange itself is out of scope here.

API base: https://api.ouraring.com

Endpoints used:
    /v2/usercollection/personal_info    — Access check
    /v2/usercollection/daily_activity   — Daily calorie/step/activity summary
    /v2/usercollection/workout          — Workout sessions
    /v2/usercollection/heartrate        — Continuous heart rate
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

import httpx

from src.healthsync.base import (
    ActivitySummary,
    DayWindow,
    HealthProviderAdapter,
    Quantity,
    WorkoutSession,
)

logger = logging.getLogger("healthsync.adapters.oura")

_OURA_API_BASE = "https://api.ouraring.com"

_WORKOUT_TYPE_MAP: dict[str, str] = {
    "running": "running",
    "cycling": "cycling",
    "walking": "walking",
    "swimming": "swimming",
    "strengthTraining": "strength_training",
    "hiit": "hiit",
    "yoga": "yoga",
    "rowing": "rowing",
    "hiking": "hiking",
    "elliptical": "elliptical",
}


class OuraAdapter(HealthProviderAdapter):
    """Oura Ring API v2 adapter.

    Oura's ``daily_activity`` document is treated as the authoritative
    summary.  Oura tracks no stand hours and sets no exercise or stand goals,
    so a GoalSet is never derived from it (the all-or-nothing rule drops the
    move goal too).  Weight and BMI are not offered.
    """

    PROVIDER_ID = "oura"
    DISPLAY_NAME = "Oura Ring"

    def __init__(
        self,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = _OURA_API_BASE,
    ) -> None:
        """Initialize the Oura adapter.

        Args:
            access_token: Bearer token for the Oura API.
            http_client:  Optional pre-configured httpx client (for testing).
            base_url:     API root, overridable for testing.
        """
        super().__init__()
        self._access_token = access_token or ""
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        return bool(self._access_token)

    async def request_access(self) -> bool:
        try:
            await self._get("/v2/usercollection/personal_info", {})
        except httpx.HTTPStatusError as exc:
            logger.warning("Oura: token rejected (%s)", exc.response.status_code)
            return False
        except httpx.TransportError as exc:
            logger.warning("Oura: access check failed: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Raw feeds
    # ------------------------------------------------------------------

    async def fetch_activity_summary(self, window: DayWindow) -> ActivitySummary | None:
        activity = await self._daily_activity(window.day)
        if not activity:
            return None
        return ActivitySummary(
            active_energy=Quantity(self._safe_float(activity.get("active_calories")) or 0.0, "kcal"),
            exercise_time=Quantity(self._exercise_seconds(activity), "s"),
            stand_hours=0.0,
            move_goal=self._safe_float(activity.get("target_calories")),
            exercise_goal=None,
            stand_goal=None,
        )

    async def fetch_active_energy(self, window: DayWindow) -> Quantity:
        activity = await self._daily_activity(window.day)
        return Quantity(self._safe_float(activity.get("active_calories")) or 0.0, "kcal")

    async def fetch_exercise_time(self, window: DayWindow) -> Quantity:
        activity = await self._daily_activity(window.day)
        return Quantity(self._exercise_seconds(activity), "s")

    async def fetch_stand_samples(self, window: DayWindow) -> list[Quantity]:
        return []

    async def fetch_steps(self, window: DayWindow) -> float:
        activity = await self._daily_activity(window.day)
        return float(self._safe_int(activity.get("steps")) or 0)

    async def fetch_distance(self, window: DayWindow) -> Quantity:
        activity = await self._daily_activity(window.day)
        return Quantity(self._safe_float(activity.get("equivalent_walking_distance")) or 0.0, "m")

    async def fetch_heart_rate_samples(self, window: DayWindow) -> list[float]:
        data = await self._get(
            "/v2/usercollection/heartrate",
            {"start_datetime": self._iso(window.start), "end_datetime": self._iso(window.end)},
        )
        return [v for v in (self._safe_float(r.get("bpm")) for r in data.get("data", [])) if v is not None]

    async def fetch_workouts(self, start: datetime, end: datetime) -> list[WorkoutSession]:
        data = await self._get(
            "/v2/usercollection/workout",
            {
                "start_date": start.date().isoformat(),
                "end_date": (end.date() + timedelta(days=1)).isoformat(),
            },
        )
        sessions: list[WorkoutSession] = []
        for item in data.get("data", []):
            session = self._parse_workout(item)
            if session is not None and start <= session.start_time < end:
                sessions.append(session)
        return sessions

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _exercise_seconds(self, activity: dict) -> float:
        high = self._safe_float(activity.get("high_activity_time")) or 0.0
        medium = self._safe_float(activity.get("medium_activity_time")) or 0.0
        return high + medium

    def _parse_workout(self, item: dict) -> WorkoutSession | None:
        start = self._parse_iso_datetime(item.get("start_datetime"))
        end = self._parse_iso_datetime(item.get("end_datetime"))
        if start is None or end is None:
            return None
        return WorkoutSession(
            id=str(item.get("id") or ""),
            type=_WORKOUT_TYPE_MAP.get(item.get("activity", ""), "other"),
            start_time=start,
            end_time=end,
            duration_minutes=int((end - start).total_seconds() // 60),
            calories=int(round(self._safe_float(item.get("calories")) or 0)),
            distance_meters=self._safe_float(item.get("distance")),
            provider=self.PROVIDER_ID,
            source=item.get("source"),
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _daily_activity(self, day: date) -> dict:
        """Return the daily_activity document for ``day`` ({} if none).

        Never cached: Oura keeps revising a day for hours after midnight.
        """
        data = await self._get(
            "/v2/usercollection/daily_activity",
            {"start_date": day.isoformat(), "end_date": (day + timedelta(days=1)).isoformat()},
        )
        return next((r for r in data.get("data", []) if r.get("day") == day.isoformat()), {})

    def _build_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _get(self, path: str, params: dict) -> dict:
        """Make an authenticated GET request to the Oura API.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses.
        """
        url = f"{self._base_url}{path}"
        headers = self._build_headers()

        if self._http_client:
            response = await self._http_client.get(url, params=params, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, params=params, headers=headers)

        response.raise_for_status()
        return response.json()

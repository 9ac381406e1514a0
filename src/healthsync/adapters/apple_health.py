"""Apple Health adapter backed by a device-local HealthKit bridge.

HealthKit has no web API; the companion app on the device exposes a small
local HTTP bridge that answers HealthKit queries.  This adapter talks to that
bridge with httpx and returns quantities in HealthKit's own units
(kcal, minutes, seconds, miles, pounds); normalization is the reconciler's job.

Bridge endpoints used:
    GET  /status                         — {"available": bool}
    POST /authorize                      — {"granted": bool}
    GET  /activity-summary?date=         — Activity rings + goals (404 if none)
    GET  /samples/{type}?start=&end=     — {"unit": str, "samples": [...]}
    GET  /workouts?start=&end=           — {"workouts": [...]}
    GET  /latest/{type}                  — Most recent sample (404 if none)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import httpx

from src.healthsync.base import (
    ActivitySummary,
    BMISample,
    DayWindow,
    HealthProviderAdapter,
    Quantity,
    RawWeight,
    WorkoutSession,
)
from src.healthsync.errors import PermissionDenied

logger = logging.getLogger("healthsync.adapters.apple_health")

# HealthKit quantity types requested at authorization time.
READ_TYPES: tuple[str, ...] = (
    "activeEnergyBurned",
    "appleExerciseTime",
    "appleStandTime",
    "stepCount",
    "distanceWalkingRunning",
    "heartRate",
    "bodyMass",
    "bodyMassIndex",
    "workout",
    "activitySummary",
)

_WORKOUT_TYPE_MAP: dict[str, str] = {
    "HKWorkoutActivityTypeRunning": "running",
    "HKWorkoutActivityTypeCycling": "cycling",
    "HKWorkoutActivityTypeSwimming": "swimming",
    "HKWorkoutActivityTypeWalking": "walking",
    "HKWorkoutActivityTypeTraditionalStrengthTraining": "strength_training",
    "HKWorkoutActivityTypeHighIntensityIntervalTraining": "hiit",
    "HKWorkoutActivityTypeYoga": "yoga",
    "HKWorkoutActivityTypeRowing": "rowing",
    "HKWorkoutActivityTypeElliptical": "elliptical",
    "HKWorkoutActivityTypeHiking": "hiking",
}


class AppleHealthAdapter(HealthProviderAdapter):
    """Apple HealthKit via the on-device bridge.

    Exposes the authoritative activity summary (rings + goals) as well as
    every raw sample feed the reconciler falls back on, plus weight and BMI.
    """

    PROVIDER_ID = "apple_health"
    DISPLAY_NAME = "Apple Health"

    def __init__(
        self,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            base_url:    Root URL of the HealthKit bridge, e.g. http://127.0.0.1:8765.
            http_client: Optional pre-configured httpx client (for testing).
        """
        super().__init__()
        self._base_url = (base_url or "").rstrip("/")
        self._http_client = http_client

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        return bool(self._base_url)

    async def request_access(self) -> bool:
        try:
            data = await self._post("/authorize", {"read": list(READ_TYPES)})
        except PermissionDenied:
            return False
        except httpx.HTTPError as exc:
            logger.warning("Apple Health: authorization request failed: %s", exc)
            return False
        granted = bool(data.get("granted"))
        if not granted:
            logger.info("Apple Health: user declined HealthKit access")
        return granted

    # ------------------------------------------------------------------
    # Raw feeds
    # ------------------------------------------------------------------

    async def fetch_activity_summary(self, window: DayWindow) -> ActivitySummary | None:
        data = await self._get("/activity-summary", {"date": window.day.isoformat()}, allow_missing=True)
        if not data:
            return None
        energy = self._safe_float(data.get("activeEnergyBurned"))
        exercise = self._safe_float(data.get("appleExerciseTime"))
        stand = self._safe_float(data.get("appleStandHours"))
        if energy is None or exercise is None or stand is None:
            return None
        return ActivitySummary(
            active_energy=Quantity(energy, "kcal"),
            exercise_time=Quantity(exercise, "min"),
            stand_hours=stand,
            move_goal=self._safe_float(data.get("activeEnergyBurnedGoal")),
            exercise_goal=self._safe_float(data.get("appleExerciseTimeGoal")),
            stand_goal=self._safe_float(data.get("appleStandHoursGoal")),
        )

    async def fetch_active_energy(self, window: DayWindow) -> Quantity:
        return await self._sum_samples("activeEnergyBurned", window, "kcal")

    async def fetch_exercise_time(self, window: DayWindow) -> Quantity:
        return await self._sum_samples("appleExerciseTime", window, "min")

    async def fetch_stand_samples(self, window: DayWindow) -> list[Quantity]:
        unit, samples = await self._samples("appleStandTime", window, "s")
        return [Quantity(v, unit) for v in (self._safe_float(s.get("value")) for s in samples) if v is not None]

    async def fetch_steps(self, window: DayWindow) -> float:
        return (await self._sum_samples("stepCount", window, "count")).value

    async def fetch_distance(self, window: DayWindow) -> Quantity:
        return await self._sum_samples("distanceWalkingRunning", window, "mi")

    async def fetch_heart_rate_samples(self, window: DayWindow) -> list[float]:
        _, samples = await self._samples("heartRate", window, "count/min")
        return [v for v in (self._safe_float(s.get("value")) for s in samples) if v is not None]

    async def fetch_workouts(self, start: datetime, end: datetime) -> list[WorkoutSession]:
        data = await self._get("/workouts", {"start": self._iso(start), "end": self._iso(end)})
        sessions: list[WorkoutSession] = []
        for item in data.get("workouts", []):
            session = self._parse_workout(item)
            if session is not None and start <= session.start_time < end:
                sessions.append(session)
        return sessions

    # ------------------------------------------------------------------
    # Body measurements
    # ------------------------------------------------------------------

    async def fetch_weight(self) -> RawWeight | None:
        data = await self._get("/latest/bodyMass", {}, allow_missing=True)
        return self._parse_weight(data) if data else None

    async def fetch_weight_history(self, days: int = 90) -> list[RawWeight]:
        end = datetime.now().astimezone()
        window = DayWindow(day=end.date(), start=end - timedelta(days=days), end=end)
        _, samples = await self._samples("bodyMass", window, "lb")
        readings = [r for r in (self._parse_weight(s) for s in samples) if r is not None]
        return sorted(readings, key=lambda r: r.measured_at)

    async def fetch_bmi(self) -> BMISample | None:
        data = await self._get("/latest/bodyMassIndex", {}, allow_missing=True)
        if not data:
            return None
        value = self._safe_float(data.get("value"))
        measured_at = self._parse_iso_datetime(data.get("date") or data.get("start"))
        if value is None or measured_at is None:
            return None
        return BMISample(value=value, measured_at=measured_at)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse_workout(self, item: dict) -> WorkoutSession | None:
        start = self._parse_iso_datetime(item.get("start"))
        end = self._parse_iso_datetime(item.get("end"))
        if start is None or end is None:
            return None
        duration_s = self._safe_float(item.get("duration")) or (end - start).total_seconds()
        return WorkoutSession(
            id=str(item.get("uuid") or ""),
            type=_WORKOUT_TYPE_MAP.get(item.get("activityType", ""), "other"),
            start_time=start,
            end_time=end,
            duration_minutes=int(duration_s // 60),
            calories=int(round(self._safe_float(item.get("totalEnergyBurned")) or 0)),
            distance_meters=self._safe_float(item.get("totalDistance")),
            provider=self.PROVIDER_ID,
            source=item.get("sourceName"),
        )

    def _parse_weight(self, item: dict) -> RawWeight | None:
        value = self._safe_float(item.get("value"))
        measured_at = self._parse_iso_datetime(item.get("date") or item.get("start"))
        if value is None or measured_at is None:
            return None
        return RawWeight(quantity=Quantity(value, item.get("unit") or "lb"), measured_at=measured_at)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _samples(self, type_id: str, window: DayWindow, default_unit: str) -> tuple[str, list[dict]]:
        data = await self._get(
            f"/samples/{type_id}",
            {"start": self._iso(window.start), "end": self._iso(window.end)},
        )
        return data.get("unit") or default_unit, list(data.get("samples", []))

    async def _sum_samples(self, type_id: str, window: DayWindow, default_unit: str) -> Quantity:
        unit, samples = await self._samples(type_id, window, default_unit)
        total = sum(self._safe_float(s.get("value")) or 0.0 for s in samples)
        return Quantity(total, unit)

    async def _get(self, path: str, params: dict, allow_missing: bool = False) -> dict:
        """GET a bridge endpoint.

        Returns ``{}`` for a 404 when ``allow_missing`` is set.

        Raises:
            PermissionDenied:      On 403 (HealthKit access revoked).
            httpx.HTTPStatusError: On other non-2xx responses.
        """
        response = await self._request("GET", path, params=params)
        if allow_missing and response.status_code == 404:
            return {}
        return self._check(response)

    async def _post(self, path: str, payload: dict) -> dict:
        return self._check(await self._request("POST", path, json=payload))

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self._base_url}{path}"
        if self._http_client:
            return await self._http_client.request(method, url, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, **kwargs)

    def _check(self, response: httpx.Response) -> dict:
        if response.status_code == 403:
            self._authorized = False
            raise PermissionDenied()
        response.raise_for_status()
        return response.json() or {}

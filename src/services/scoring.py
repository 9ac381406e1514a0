"""Scoring backend client.

The scoring service stores one row per (user, date), derived events, and
streak milestones.  ``ScoringBackend`` is the seam the engine talks to;
``HttpScoringBackend`` is the production implementation over httpx.

Error mapping (every call):
    transport error / 5xx  → NetworkFailure
    401                    → one token refresh + retry, then AuthExpired
    other 4xx              → BackendRejected
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Awaitable, Callable

import httpx

from src.config import Settings, get_settings
from src.healthsync.base import DailyMetrics
from src.healthsync.errors import AuthExpired, BackendRejected, NetworkFailure
from src.models.sync import DailyScoreSubmission

logger = logging.getLogger("healthsync.scoring")

TokenRefresher = Callable[[], Awaitable[str | None]]


async def reload_scoring_api_key() -> str | None:
    """Re-read the scoring API key from the environment, picking up a rotated key."""
    get_settings.cache_clear()
    return get_settings().scoring_api_key or None


class ScoringBackend(ABC):
    """Operations the engine needs from the scoring service."""

    @abstractmethod
    async def submit_daily_metrics(self, user_id: str, metrics: DailyMetrics) -> None:
        """Upsert one day keyed by (user_id, metrics.date)."""

    @abstractmethod
    async def event_exists(self, user_id: str, event_type: str, day: date) -> bool:
        """Return True if a derived event of this type exists for the day."""

    @abstractmethod
    async def create_event(self, user_id: str, event_type: str, day: date, payload: dict | None = None) -> None:
        """Record a derived event."""

    @abstractmethod
    async def milestone_recorded(self, user_id: str, milestone_id: str) -> bool:
        """Return True if the milestone was already awarded."""

    @abstractmethod
    async def record_milestone(self, user_id: str, milestone_id: str, day_number: int) -> None:
        """Award a milestone."""


class HttpScoringBackend(ScoringBackend):
    """Scoring service over HTTP.

    Args:
        base_url:        Service root, e.g. https://scores.example.com/api.
        api_key:         Initial bearer token.
        http_client:     Optional pre-configured httpx client (for testing).
        token_refresher: Async callable returning a fresh token (or None).
        timeout_s:       Per-request timeout when no client is injected.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        http_client: httpx.AsyncClient | None = None,
        token_refresher: TokenRefresher | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = api_key
        self._http_client = http_client
        self._token_refresher = token_refresher
        self._timeout_s = timeout_s

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        token_refresher: TokenRefresher | None = reload_scoring_api_key,
    ) -> "HttpScoringBackend":
        s = settings or get_settings()
        return cls(
            base_url=s.scoring_api_url,
            api_key=s.scoring_api_key,
            http_client=http_client,
            token_refresher=token_refresher,
            timeout_s=s.http_timeout_s,
        )

    # ------------------------------------------------------------------
    # ScoringBackend interface
    # ------------------------------------------------------------------

    async def submit_daily_metrics(self, user_id: str, metrics: DailyMetrics) -> None:
        submission = DailyScoreSubmission.from_metrics(user_id, metrics)
        await self._request("POST", "/daily-scores", json=submission.to_payload())
        logger.debug("Submitted %s for %s", metrics.date, user_id)

    async def event_exists(self, user_id: str, event_type: str, day: date) -> bool:
        response = await self._request(
            "GET", f"/users/{user_id}/events", params={"type": event_type, "date": day.isoformat()}
        )
        return bool(self._json(response).get("events"))

    async def create_event(self, user_id: str, event_type: str, day: date, payload: dict | None = None) -> None:
        await self._request(
            "POST",
            f"/users/{user_id}/events",
            json={"type": event_type, "date": day.isoformat(), "payload": payload or {}},
        )

    async def milestone_recorded(self, user_id: str, milestone_id: str) -> bool:
        try:
            await self._request("GET", f"/users/{user_id}/milestones/{milestone_id}")
        except BackendRejected as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    async def record_milestone(self, user_id: str, milestone_id: str, day_number: int) -> None:
        await self._request(
            "POST",
            f"/users/{user_id}/milestones",
            json={"milestoneId": milestone_id, "dayNumber": day_number},
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"} if self._token else {}

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            if self._http_client:
                return await self._http_client.request(method, url, headers=self._headers(), **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                return await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TransportError as exc:
            raise NetworkFailure(f"Could not reach the scoring service ({exc.__class__.__name__})") from exc

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, refreshing the token once on 401.

        Raises:
            NetworkFailure:  Transport error or 5xx.
            AuthExpired:     401 after one refresh attempt.
            BackendRejected: Any other 4xx.
        """
        response = await self._send(method, path, **kwargs)

        if response.status_code == 401 and self._token_refresher is not None:
            new_token = await self._token_refresher()
            if new_token and new_token != self._token:
                logger.info("Scoring token refreshed, retrying %s %s", method, path)
                self._token = new_token
                response = await self._send(method, path, **kwargs)

        if response.status_code == 401:
            raise AuthExpired()
        if response.status_code >= 500:
            raise NetworkFailure(f"Scoring service error {response.status_code}")
        if response.status_code >= 400:
            raise BackendRejected(
                f"Scoring service rejected {method} {path} ({response.status_code})",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        """Decode a JSON object body ({} when empty).

        Raises:
            BackendRejected: Body is not a JSON object.
        """
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendRejected(
                f"Unreadable response from {response.request.url.path}", status_code=response.status_code
            ) from exc
        if not isinstance(data, dict):
            raise BackendRejected(
                f"Unexpected response shape from {response.request.url.path}", status_code=response.status_code
            )
        return data

"""Tests for the HTTP scoring backend client and its error mapping."""

from __future__ import annotations

import json
from dataclasses import replace

import httpx
import pytest

from src.config import Settings, get_settings
from src.healthsync.base import DailyMetrics
from src.healthsync.errors import AuthExpired, BackendRejected, NetworkFailure
from src.healthsync.tests.conftest import NOW, TEST_USER_ID, TODAY
from src.services.scoring import HttpScoringBackend

BASE = "http://scores.test/api"


def _metrics(**overrides) -> DailyMetrics:
    metrics = DailyMetrics(
        date=TODAY,
        active_calories=420,
        exercise_minutes=25,
        stand_hours=9,
        steps=8500,
        distance_meters=4828.0,
        heart_rate_avg=70,
        workouts_completed=1,
        last_updated=NOW,
        provider="fake",
    )
    return replace(metrics, **overrides)


class Recorder:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0) if self.responses else httpx.Response(200, json={})


def _backend(recorder: Recorder, **kwargs) -> HttpScoringBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return HttpScoringBackend(BASE, api_key="tok-1", http_client=client, **kwargs)


class TestSubmitDailyMetrics:
    @pytest.mark.asyncio
    async def test_payload_uses_camel_case(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"ok": True}))
        await _backend(recorder).submit_daily_metrics(TEST_USER_ID, _metrics())

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/daily-scores"
        assert request.headers["Authorization"] == "Bearer tok-1"
        body = json.loads(request.content)
        assert body == {
            "userId": TEST_USER_ID,
            "date": "2026-03-10",
            "moveCalories": 420,
            "exerciseMinutes": 25,
            "standHours": 9,
            "steps": 8500,
            "distanceMeters": 4828.0,
            "workoutsCompleted": 1,
        }

    @pytest.mark.asyncio
    async def test_implausible_values_rejected_locally(self) -> None:
        recorder = Recorder()
        with pytest.raises(BackendRejected, match="Implausible"):
            await _backend(recorder).submit_daily_metrics(TEST_USER_ID, _metrics(active_calories=25000))
        assert recorder.requests == []


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_server_error_is_network_failure(self) -> None:
        recorder = Recorder(httpx.Response(503))
        with pytest.raises(NetworkFailure):
            await _backend(recorder).submit_daily_metrics(TEST_USER_ID, _metrics())

    @pytest.mark.asyncio
    async def test_client_error_is_rejection(self) -> None:
        recorder = Recorder(httpx.Response(409, json={"detail": "conflict"}))
        with pytest.raises(BackendRejected) as exc_info:
            await _backend(recorder).submit_daily_metrics(TEST_USER_ID, _metrics())
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_transport_error_is_network_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = HttpScoringBackend(BASE, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(NetworkFailure, match="ConnectError"):
            await backend.event_exists(TEST_USER_ID, "rings_closed", TODAY)

    @pytest.mark.asyncio
    async def test_401_without_refresher_is_auth_expired(self) -> None:
        recorder = Recorder(httpx.Response(401))
        with pytest.raises(AuthExpired):
            await _backend(recorder).submit_daily_metrics(TEST_USER_ID, _metrics())
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_retries(self) -> None:
        recorder = Recorder(httpx.Response(401), httpx.Response(200, json={}))

        async def refresher() -> str:
            return "tok-2"

        await _backend(recorder, token_refresher=refresher).submit_daily_metrics(TEST_USER_ID, _metrics())
        assert [r.headers["Authorization"] for r in recorder.requests] == ["Bearer tok-1", "Bearer tok-2"]

    @pytest.mark.asyncio
    async def test_second_401_is_auth_expired(self) -> None:
        recorder = Recorder(httpx.Response(401), httpx.Response(401))
        refreshes = 0

        async def refresher() -> str:
            nonlocal refreshes
            refreshes += 1
            return "tok-2"

        with pytest.raises(AuthExpired):
            await _backend(recorder, token_refresher=refresher).submit_daily_metrics(TEST_USER_ID, _metrics())
        assert refreshes == 1
        assert len(recorder.requests) == 2


class TestEventsAndMilestones:
    @pytest.mark.asyncio
    async def test_event_exists_query(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"events": [{"id": 1}]}))
        assert await _backend(recorder).event_exists(TEST_USER_ID, "rings_closed", TODAY) is True

        request = recorder.requests[0]
        assert request.url.path == f"/api/users/{TEST_USER_ID}/events"
        assert request.url.params["type"] == "rings_closed"
        assert request.url.params["date"] == "2026-03-10"

    @pytest.mark.asyncio
    async def test_no_events(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"events": []}))
        assert await _backend(recorder).event_exists(TEST_USER_ID, "rings_closed", TODAY) is False

    @pytest.mark.asyncio
    async def test_create_event_with_empty_response(self) -> None:
        recorder = Recorder(httpx.Response(201))
        await _backend(recorder).create_event(TEST_USER_ID, "rings_closed", TODAY)
        assert json.loads(recorder.requests[0].content) == {
            "type": "rings_closed",
            "date": "2026-03-10",
            "payload": {},
        }

    @pytest.mark.asyncio
    async def test_missing_milestone_is_false(self) -> None:
        recorder = Recorder(httpx.Response(404))
        assert await _backend(recorder).milestone_recorded(TEST_USER_ID, "streak_7") is False

    @pytest.mark.asyncio
    async def test_recorded_milestone_is_true(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"milestoneId": "streak_7"}))
        assert await _backend(recorder).milestone_recorded(TEST_USER_ID, "streak_7") is True

    @pytest.mark.asyncio
    async def test_record_milestone_body(self) -> None:
        recorder = Recorder(httpx.Response(201, json={}))
        await _backend(recorder).record_milestone(TEST_USER_ID, "streak_30", 30)
        assert json.loads(recorder.requests[0].content) == {"milestoneId": "streak_30", "dayNumber": 30}


class TestResponseBodies:
    @pytest.mark.asyncio
    async def test_write_ignores_plain_text_body(self) -> None:
        recorder = Recorder(httpx.Response(200, text="OK"))
        await _backend(recorder).submit_daily_metrics(TEST_USER_ID, _metrics())
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_unreadable_read_is_rejection(self) -> None:
        recorder = Recorder(httpx.Response(200, text="OK"))
        with pytest.raises(BackendRejected, match="Unreadable"):
            await _backend(recorder).event_exists(TEST_USER_ID, "rings_closed", TODAY)

    @pytest.mark.asyncio
    async def test_non_object_read_is_rejection(self) -> None:
        recorder = Recorder(httpx.Response(200, json=[{"id": 1}]))
        with pytest.raises(BackendRejected, match="shape"):
            await _backend(recorder).event_exists(TEST_USER_ID, "rings_closed", TODAY)


class TestTokenRefreshFromSettings:
    @pytest.fixture(autouse=True)
    def _fresh_settings(self):
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()

    @pytest.mark.asyncio
    async def test_rotated_key_is_picked_up(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCORING_API_KEY", "tok-2")
        recorder = Recorder(httpx.Response(401), httpx.Response(200, json={}))
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        backend = HttpScoringBackend.from_settings(
            Settings(scoring_api_url=BASE, scoring_api_key="tok-1"), http_client=client
        )

        await backend.submit_daily_metrics(TEST_USER_ID, _metrics())
        assert [r.headers["Authorization"] for r in recorder.requests] == ["Bearer tok-1", "Bearer tok-2"]

    @pytest.mark.asyncio
    async def test_unchanged_key_is_auth_expired(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCORING_API_KEY", "tok-1")
        recorder = Recorder(httpx.Response(401))
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        backend = HttpScoringBackend.from_settings(
            Settings(scoring_api_url=BASE, scoring_api_key="tok-1"), http_client=client
        )

        with pytest.raises(AuthExpired):
            await backend.submit_daily_metrics(TEST_USER_ID, _metrics())
        assert len(recorder.requests) == 1

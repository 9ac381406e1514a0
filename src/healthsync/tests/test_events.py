"""Tests for rings-closed detection and personal records."""

from __future__ import annotations

from dataclasses import replace

import pytest

from src.healthsync.base import DailyMetrics, GoalSet
from src.healthsync.config_loader import SyncConfig
from src.healthsync.events import RINGS_CLOSED, DerivedEventDetector, RingProgress, update_personal_records
from src.healthsync.state import PersonalRecordState
from src.healthsync.sync.dedup import InMemoryDedupCache
from src.healthsync.tests.conftest import NOW, TEST_USER_ID, TODAY, InMemoryBackend

GOALS = GoalSet(move_calories=500, exercise_minutes=30, stand_hours=12, steps=10000)


def _metrics(calories: int = 520, exercise: int = 31, stand: int = 12, steps: int = 9000) -> DailyMetrics:
    return DailyMetrics(
        date=TODAY,
        active_calories=calories,
        exercise_minutes=exercise,
        stand_hours=stand,
        steps=steps,
        distance_meters=6000.0,
        heart_rate_avg=72,
        workouts_completed=1,
        last_updated=NOW,
        provider="fake",
    )


class TestRingProgress:
    def test_ratios(self) -> None:
        progress = RingProgress.from_metrics(_metrics(calories=250, exercise=30, stand=6), GOALS)
        assert progress.move == pytest.approx(0.5)
        assert progress.exercise == pytest.approx(1.0)
        assert progress.closed_rings == ["exercise"]
        assert not progress.all_closed


class TestRingsClosed:
    @pytest.mark.asyncio
    async def test_event_created_once_per_day(self, backend: InMemoryBackend, sync_config: SyncConfig) -> None:
        detector = DerivedEventDetector(backend, config=sync_config)
        for _ in range(3):
            progress = await detector.check_rings_closed(TEST_USER_ID, _metrics(), GOALS)
            assert progress.all_closed

        assert list(backend.events) == [(TEST_USER_ID, RINGS_CLOSED, TODAY)]
        assert backend.event_checks == 1

    @pytest.mark.asyncio
    async def test_backend_check_is_authoritative_across_processes(
        self, backend: InMemoryBackend, sync_config: SyncConfig
    ) -> None:
        await DerivedEventDetector(backend, config=sync_config).check_rings_closed(TEST_USER_ID, _metrics(), GOALS)
        await DerivedEventDetector(backend, config=sync_config, dedup=InMemoryDedupCache()).check_rings_closed(
            TEST_USER_ID, _metrics(), GOALS
        )
        assert len(backend.events) == 1
        assert backend.event_checks == 2

    @pytest.mark.asyncio
    async def test_not_created_when_a_ring_is_open(self, backend: InMemoryBackend, sync_config: SyncConfig) -> None:
        detector = DerivedEventDetector(backend, config=sync_config)
        await detector.check_rings_closed(TEST_USER_ID, _metrics(stand=11), GOALS)
        assert backend.events == {}
        assert backend.event_checks == 0

    @pytest.mark.asyncio
    async def test_slow_existence_check_creates_nothing(
        self, backend: InMemoryBackend, sync_config: SyncConfig
    ) -> None:
        backend.event_exists_delay = 5.0
        detector = DerivedEventDetector(backend, config=sync_config)
        await detector.check_rings_closed(TEST_USER_ID, _metrics(), GOALS)
        assert backend.events == {}

        # Not cached, so a later sync retries.
        backend.event_exists_delay = 0.0
        await detector.check_rings_closed(TEST_USER_ID, _metrics(), GOALS)
        assert len(backend.events) == 1


class TestPersonalRecords:
    def test_strict_exceed_updates(self) -> None:
        records = PersonalRecordState(max_daily_calories=500, max_daily_steps=9000, max_weekly_workouts=3)
        updated, beaten = update_personal_records(records, _metrics(calories=520, steps=9000), weekly_workouts=4)

        assert updated.max_daily_calories == 520
        assert updated.max_daily_steps == 9000
        assert updated.max_weekly_workouts == 4
        assert {b.record for b in beaten} == {"max_daily_calories", "max_weekly_workouts"}

    def test_never_decreases(self) -> None:
        records = PersonalRecordState(max_daily_calories=900, max_daily_steps=20000, max_weekly_workouts=6)
        updated, beaten = update_personal_records(records, _metrics(), weekly_workouts=2)
        assert updated == records
        assert beaten == []

    def test_weekly_untouched_without_count(self) -> None:
        records = PersonalRecordState(max_weekly_workouts=5)
        updated, _ = update_personal_records(records, replace(_metrics(), steps=1))
        assert updated.max_weekly_workouts == 5

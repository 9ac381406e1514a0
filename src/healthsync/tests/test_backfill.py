"""Tests for the backfill engine: window sizing, ordering, idempotency, failures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from src.healthsync.config_loader import SyncConfig
from src.healthsync.state import SyncCursor
from src.healthsync.sync.backfill import BackfillEngine, BackfillProgress, backfill_window_days, resume_timestamp
from src.healthsync.tests.conftest import (
    NOW,
    TEST_USER_ID,
    TODAY,
    TZ,
    FakeAdapter,
    FixedClock,
    InMemoryBackend,
)


async def _run(engine: BackfillEngine, cursor: SyncCursor) -> list[BackfillProgress]:
    return [BackfillProgress(**vars(p)) async for p in engine.run(TEST_USER_ID, cursor)]


class TestWindow:
    def test_bootstrap_window_before_first_backfill(self, sync_config: SyncConfig) -> None:
        assert backfill_window_days(SyncCursor(), NOW, sync_config) == 28

    def test_same_day_resync_still_covers_yesterday(self, sync_config: SyncConfig) -> None:
        cursor = SyncCursor(last_sync_timestamp=NOW - timedelta(hours=2), initial_backfill_done=True)
        assert backfill_window_days(cursor, NOW, sync_config) == 1

    def test_counts_calendar_days_not_elapsed_hours(self, sync_config: SyncConfig) -> None:
        last = datetime(2026, 3, 9, 23, 59, tzinfo=TZ)
        now = datetime(2026, 3, 10, 0, 1, tzinfo=TZ)
        cursor = SyncCursor(last_sync_timestamp=last, initial_backfill_done=True)
        assert backfill_window_days(cursor, now, sync_config) == 1

    def test_gap_is_clamped(self, sync_config: SyncConfig) -> None:
        cursor = SyncCursor(last_sync_timestamp=NOW - timedelta(days=90), initial_backfill_done=True)
        assert backfill_window_days(cursor, NOW, sync_config) == 28

    def test_multi_day_gap(self, sync_config: SyncConfig) -> None:
        cursor = SyncCursor(last_sync_timestamp=NOW - timedelta(days=4), initial_backfill_done=True)
        assert backfill_window_days(cursor, NOW, sync_config) == 4

    def test_resume_timestamp_reopens_failed_day(self, sync_config: SyncConfig) -> None:
        failed = TODAY - timedelta(days=5)
        cursor = SyncCursor(last_sync_timestamp=resume_timestamp(failed, TZ), initial_backfill_done=True)
        engine = BackfillEngine(FakeAdapter(), InMemoryBackend(), config=sync_config, clock=FixedClock())
        assert engine.plan(cursor)[0] == failed


class TestBackfillRun:
    @pytest.mark.asyncio
    async def test_bootstrap_submits_28_days_oldest_first(
        self,
        fake_adapter: FakeAdapter,
        backend: InMemoryBackend,
        sync_config: SyncConfig,
        clock: FixedClock,
    ) -> None:
        engine = BackfillEngine(fake_adapter, backend, config=sync_config, clock=clock)
        updates = await _run(engine, SyncCursor())

        expected = [TODAY - timedelta(days=n) for n in range(28, 0, -1)]
        assert backend.submit_calls == expected
        assert TODAY not in backend.submit_calls
        final = updates[-1]
        assert final.is_complete
        assert final.synced_days == expected
        assert final.pct_complete == 100.0

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(
        self,
        fake_adapter: FakeAdapter,
        backend: InMemoryBackend,
        sync_config: SyncConfig,
        clock: FixedClock,
    ) -> None:
        engine = BackfillEngine(fake_adapter, backend, config=sync_config, clock=clock)
        await _run(engine, SyncCursor())
        rows_after_first = dict(backend.rows)
        await _run(engine, SyncCursor())

        assert len(backend.rows) == 28
        assert set(backend.rows) == set(rows_after_first)

    @pytest.mark.asyncio
    async def test_failed_day_does_not_abort_run(
        self,
        fake_adapter: FakeAdapter,
        backend: InMemoryBackend,
        sync_config: SyncConfig,
        clock: FixedClock,
    ) -> None:
        bad_day = TODAY - timedelta(days=10)
        backend.reject_days.add(bad_day)
        engine = BackfillEngine(fake_adapter, backend, config=sync_config, clock=clock)
        updates = await _run(engine, SyncCursor())

        final = updates[-1]
        assert final.failed_days == [bad_day]
        assert len(final.synced_days) == 27
        assert any(str(bad_day) in e for e in final.errors)
        assert final.retry_from == bad_day

    @pytest.mark.asyncio
    async def test_submission_past_deadline_is_a_failed_day(
        self,
        fake_adapter: FakeAdapter,
        sync_config: SyncConfig,
        clock: FixedClock,
    ) -> None:
        slow_day = TODAY - timedelta(days=1)

        class SlowBackend(InMemoryBackend):
            async def submit_daily_metrics(self, user_id, metrics) -> None:
                if metrics.date == slow_day:
                    await asyncio.sleep(5)
                await super().submit_daily_metrics(user_id, metrics)

        cursor = SyncCursor(last_sync_timestamp=NOW - timedelta(days=2), initial_backfill_done=True)
        engine = BackfillEngine(fake_adapter, SlowBackend(), config=sync_config, clock=clock)
        final = (await _run(engine, cursor))[-1]

        assert final.synced_days == [TODAY - timedelta(days=2)]
        assert final.failed_days == [slow_day]
        assert final.errors == [f"{slow_day}: Timed out submitting {slow_day}"]

    @pytest.mark.asyncio
    async def test_each_successful_day_is_flagged(
        self,
        fake_adapter: FakeAdapter,
        backend: InMemoryBackend,
        sync_config: SyncConfig,
        clock: FixedClock,
    ) -> None:
        bad_day = TODAY - timedelta(days=1)
        backend.reject_days.add(bad_day)
        cursor = SyncCursor(last_sync_timestamp=NOW - timedelta(days=2), initial_backfill_done=True)
        engine = BackfillEngine(fake_adapter, backend, config=sync_config, clock=clock)
        updates = await _run(engine, cursor)

        per_day = [(u.current_date, u.day_submitted) for u in updates if not u.is_complete]
        assert per_day == [(TODAY - timedelta(days=2), True), (bad_day, False)]

    @pytest.mark.asyncio
    async def test_engine_does_not_touch_cursor(
        self,
        fake_adapter: FakeAdapter,
        backend: InMemoryBackend,
        sync_config: SyncConfig,
        clock: FixedClock,
    ) -> None:
        cursor = SyncCursor()
        await _run(BackfillEngine(fake_adapter, backend, config=sync_config, clock=clock), cursor)
        assert cursor == SyncCursor()

    @pytest.mark.asyncio
    async def test_expired_session_stops_run(
        self,
        fake_adapter: FakeAdapter,
        backend: InMemoryBackend,
        sync_config: SyncConfig,
        clock: FixedClock,
    ) -> None:
        backend.auth_expired = True
        engine = BackfillEngine(fake_adapter, backend, config=sync_config, clock=clock)
        updates = await _run(engine, SyncCursor())

        final = updates[-1]
        assert final.auth_expired
        assert final.is_complete
        assert final.processed_days == 0
        assert final.errors == []
        assert final.retry_from == TODAY - timedelta(days=28)

    @pytest.mark.asyncio
    async def test_sleeps_between_days_only(
        self,
        fake_adapter: FakeAdapter,
        backend: InMemoryBackend,
        sync_config: SyncConfig,
        clock: FixedClock,
    ) -> None:
        sync_config.backfill.inter_day_delay_ms = 250
        pauses: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            pauses.append(seconds)

        cursor = SyncCursor(last_sync_timestamp=NOW - timedelta(days=3), initial_backfill_done=True)
        engine = BackfillEngine(fake_adapter, backend, config=sync_config, clock=clock, sleep=fake_sleep)
        await _run(engine, cursor)
        assert pauses == [0.25, 0.25]

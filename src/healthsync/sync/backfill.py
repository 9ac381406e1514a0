"""Catch-up backfill engine.

Fills the gap between the last successful sync and yesterday:

- First sync after connecting: the full bootstrap window (28 days).
- Afterwards: the number of local calendar days since the last successful
  submission, clamped to [1, 28], so yesterday is always re-synced.
- Days are processed oldest-first and strictly one at a time, with a short
  delay between days.
- A failed day is logged and recorded, never aborts the run.
- Backend submission is an upsert on (user, date), so re-running a window is
  idempotent.

The engine never mutates the cursor itself.  It yields a BackfillProgress
after every day; the caller advances the cursor while every day so far has
been submitted, and otherwise pins it to the start of the oldest failed day
with ``resume_timestamp`` so the next window starts there.

Usage::

    engine = BackfillEngine(adapter, backend, config=config)
    async for progress in engine.run(user_id, cursor, goals):
        if progress.day_submitted and not progress.failed_days:
            cursor.last_sync_timestamp = clock()
    if progress.retry_from is not None:
        cursor.last_sync_timestamp = resume_timestamp(progress.retry_from, clock().tzinfo)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import AsyncIterator, Awaitable, Callable

from src.healthsync.base import GoalSet, HealthProviderAdapter, local_now
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.deadline import with_deadline
from src.healthsync.errors import AuthExpired, SyncError, SyncTimeout
from src.healthsync.reconciler import MetricsReconciler
from src.healthsync.state import SyncCursor
from src.services.scoring import ScoringBackend

logger = logging.getLogger("healthsync.sync.backfill")


def backfill_window_days(cursor: SyncCursor, now: datetime, config: SyncConfig) -> int:
    """Return how many past days (ending yesterday) the next backfill covers.

    Elapsed days are counted in local calendar days, so a sync at 23:59
    followed by one at 00:01 counts as one day, not zero.
    """
    cfg = config.backfill
    if not cursor.initial_backfill_done or cursor.last_sync_timestamp is None:
        return cfg.bootstrap_days
    last_local = cursor.last_sync_timestamp.astimezone(now.tzinfo).date()
    elapsed = (now.date() - last_local).days
    return max(cfg.min_catchup_days, min(elapsed, cfg.max_catchup_days))


def resume_timestamp(day: date, tz: tzinfo | None) -> datetime:
    """Cursor value that makes the next window start on ``day``."""
    return datetime.combine(day, time.min, tzinfo=tz)


@dataclass
class BackfillProgress:
    """Progress update emitted after each backfilled day.

    Attributes:
        provider_id:    Provider being backfilled.
        current_date:   Day just processed (None for the initial update).
        processed_days: Days processed so far.
        total_days:     Days in this run.
        synced_days:    Days submitted successfully.
        failed_days:    Days that failed to reconcile or submit.
        day_submitted:  True if ``current_date`` was submitted on this step.
        errors:         Error messages so far (last few).
        auth_expired:   True if the run stopped on an expired session.
        is_complete:    True on the final update.
    """

    provider_id: str
    current_date: date | None
    processed_days: int
    total_days: int
    synced_days: list[date] = field(default_factory=list)
    failed_days: list[date] = field(default_factory=list)
    day_submitted: bool = False
    errors: list[str] = field(default_factory=list)
    auth_expired: bool = False
    is_complete: bool = False

    @property
    def retry_from(self) -> date | None:
        """Oldest day the next run must cover again, if any day was missed."""
        if self.failed_days:
            return self.failed_days[0]
        if self.auth_expired:
            return self.current_date
        return None

    @property
    def pct_complete(self) -> float:
        if self.total_days == 0:
            return 100.0
        return round(self.processed_days / self.total_days * 100, 1)


class BackfillEngine:
    """Backfill past days for one adapter and one user.

    Args:
        adapter: Provider adapter (connected by the caller).
        backend: Scoring backend receiving one upsert per day.
        config:  Engine config.
        clock:   Returns the current tz-aware local time.
        sleep:   Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        adapter: HealthProviderAdapter,
        backend: ScoringBackend,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._adapter = adapter
        self._backend = backend
        self._config = config or get_sync_config()
        self._clock = clock or local_now
        self._sleep = sleep
        self._reconciler = MetricsReconciler(adapter, config=self._config, clock=self._clock)

    def plan(self, cursor: SyncCursor) -> list[date]:
        """Days the next run will process, oldest first."""
        now = self._clock()
        n = backfill_window_days(cursor, now, self._config)
        today = now.date()
        return [today - timedelta(days=offset) for offset in range(n, 0, -1)]

    async def run(
        self, user_id: str, cursor: SyncCursor, stored_goals: GoalSet | None = None
    ) -> AsyncIterator[BackfillProgress]:
        """Run the backfill.  Async generator of BackfillProgress updates."""
        provider_id = self._adapter.PROVIDER_ID
        days = self.plan(cursor)
        progress = BackfillProgress(provider_id=provider_id, current_date=None, processed_days=0, total_days=len(days))
        logger.info(
            "Backfill %s for %s: %d day(s) %s..%s",
            provider_id, user_id, len(days), days[0] if days else "-", days[-1] if days else "-",
        )
        delay_s = self._config.backfill.inter_day_delay_s

        for index, day in enumerate(days):
            progress.current_date = day
            progress.day_submitted = False
            try:
                submitted = await self._sync_day(user_id, day, stored_goals)
            except AuthExpired:
                logger.info("Backfill %s stopped: session expired", provider_id)
                progress.auth_expired = True
                break
            except SyncError as exc:
                submitted = False
                progress.errors.append(f"{day}: {exc.reason}")
                logger.warning("Backfill %s failed on %s: %s", provider_id, day, exc.reason)
            except Exception as exc:
                submitted = False
                progress.errors.append(f"{day}: {exc}")
                logger.exception("Backfill %s crashed on %s", provider_id, day)

            progress.processed_days += 1
            if submitted:
                progress.synced_days.append(day)
                progress.day_submitted = True
            else:
                progress.failed_days.append(day)

            yield progress

            if index < len(days) - 1 and delay_s > 0:
                await self._sleep(delay_s)

        progress.day_submitted = False
        progress.is_complete = True
        progress.errors = progress.errors[-10:]
        logger.info(
            "Backfill %s complete: %d synced, %d failed",
            provider_id, len(progress.synced_days), len(progress.failed_days),
        )
        yield progress

    async def _sync_day(self, user_id: str, day: date, stored_goals: GoalSet | None) -> bool:
        metrics = await self._reconciler.reconcile(day, stored_goals)
        if metrics is None:
            logger.warning("Backfill %s: no metrics for %s", self._adapter.PROVIDER_ID, day)
            return False

        async def _submit() -> bool:
            await self._backend.submit_daily_metrics(user_id, metrics)
            return True

        submitted = await with_deadline(
            _submit(), self._config.deadlines.backend, False, label=f"submit {day}"
        )
        if not submitted:
            raise SyncTimeout(f"Timed out submitting {day}")
        return True

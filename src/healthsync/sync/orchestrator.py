"""Sync orchestrator: connection lifecycle, sync runs, background scheduling.

One orchestrator owns the adapters, the persisted EngineState, and the
background sync task.  A sync run for the active provider goes:

1. Catch-up backfill of past days (skipped without a signed-in user).
2. Reconcile today.
3. Adopt provider goals when valid.
4. Submit today.
5. Rings-closed check for today.
6. Streak and milestone evaluation.
7. Personal records.
8. Persist.

Runs for the same provider are serialized by a per-provider lock; two
concurrent ``sync_now`` calls both complete, and the later one wins.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Awaitable, Callable

from src.healthsync.adapters.unavailable import UnavailableAdapter
from src.healthsync.base import DailyMetrics, GoalSet, HealthProviderAdapter, WeightSample, local_now
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.deadline import with_deadline
from src.healthsync.errors import AuthExpired, PermissionDenied, ProviderUnavailable, SyncError, SyncTimeout
from src.healthsync.events import DerivedEventDetector, RingProgress, update_personal_records
from src.healthsync.reconciler import weight_to_kg
from src.healthsync.state import EngineState, MilestoneEvent, SyncCursor, WeightState
from src.healthsync.streaks import StreakCalculator, StreakResult
from src.healthsync.sync.backfill import BackfillEngine, BackfillProgress, resume_timestamp
from src.healthsync.sync.dedup import InMemoryDedupCache
from src.services.scoring import ScoringBackend
from src.services.state_store import StateStore

logger = logging.getLogger("healthsync.sync.orchestrator")

ProgressCallback = Callable[[BackfillProgress], None]


@dataclass
class SyncResult:
    """Result of one sync run.

    Attributes:
        provider_id:  Provider synced (None if nothing was connected).
        status:       'success', 'partial', 'error' or 'skipped'.
        days_synced:  Days submitted to the backend, oldest first.
        days_failed:  Days that could not be reconciled or submitted.
        error:        Human-readable error for 'partial' / 'error'.
        synced_at:    Local completion time.
        metrics:      Today's reconciled metrics, when available.
        rings:        Today's ring progress, when evaluated.
        streak:       Streak evaluation, when it ran.
    """

    provider_id: str | None
    status: str = "success"
    days_synced: list[date] = field(default_factory=list)
    days_failed: list[date] = field(default_factory=list)
    error: str | None = None
    synced_at: datetime | None = None
    metrics: DailyMetrics | None = None
    rings: RingProgress | None = None
    streak: StreakResult | None = None


class SyncOrchestrator:
    """Coordinate adapters, backfill, derived events and persisted state.

    Args:
        store:                  Persistence for EngineState sections.
        backend:                Scoring backend.
        adapters:               provider_id → adapter (one per known provider).
        get_current_user_id:    Returns the signed-in user id, or None.
        get_active_provider_id: Optional override for which provider is active;
                                defaults to the persisted active provider.
        config:                 Engine config.
        clock:                  Returns the current tz-aware local time.
        state_key:              Key under which state is persisted.
        sleep:                  Awaitable sleep used between backfill days.
    """

    def __init__(
        self,
        store: StateStore,
        backend: ScoringBackend,
        adapters: dict[str, HealthProviderAdapter],
        get_current_user_id: Callable[[], str | None],
        get_active_provider_id: Callable[[], str | None] | None = None,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        state_key: str = "default",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._backend = backend
        self._adapters = adapters
        self._get_current_user_id = get_current_user_id
        self._get_active_provider_id = get_active_provider_id
        self._config = config or get_sync_config()
        self._clock = clock or local_now
        self._state_key = state_key
        self._sleep = sleep

        self.state = EngineState(goals=self._config.goals)
        self.state.ensure_providers(list(adapters))
        self._dedup = InMemoryDedupCache()
        self._locks: dict[str, asyncio.Lock] = {}
        self._task: asyncio.Task | None = None
        self._syncing = 0
        self._current_metrics: DailyMetrics | None = None
        self._last_sync_error: str | None = None
        self._last_streak: StreakResult | None = None
        self._progress: BackfillProgress | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Load persisted state.  Unreadable sections fall back to defaults."""
        sections = await self._store.load(self._state_key)
        self.state = EngineState.from_sections(sections, default_goals=self._config.goals)
        self.state.ensure_providers(list(self._adapters))
        logger.info(
            "Engine state loaded (active provider: %s, streak: %d)",
            self.state.active_provider, self.state.streak.current_streak_days,
        )

    def start(self) -> None:
        """Start the background sync task.  No-op if already running."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_loop(), name="healthsync-background-sync")
        logger.info("Background sync started (poll every %ds)", self._config.sync.poll_seconds)

    async def stop(self) -> None:
        """Cancel the background task and wait for it to unwind."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Background sync stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        while True:
            provider_id = self.active_provider_id
            if provider_id and self.should_sync(provider_id):
                try:
                    await self.sync_now(trigger="background")
                except Exception:
                    logger.exception("Background sync for %s crashed", provider_id)
            await asyncio.sleep(self._config.sync.poll_seconds)

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def active_provider_id(self) -> str | None:
        if self._get_active_provider_id is not None:
            return self._get_active_provider_id()
        return self.state.active_provider

    @property
    def last_sync_error(self) -> str | None:
        return self._last_sync_error

    @property
    def is_syncing(self) -> bool:
        return self._syncing > 0

    @property
    def backfill_progress(self) -> BackfillProgress | None:
        """Progress of the current backfill, when a progress indicator was requested."""
        return self._progress

    @property
    def adapters(self) -> dict[str, HealthProviderAdapter]:
        return self._adapters

    def get_current_metrics(self) -> DailyMetrics | None:
        return self._current_metrics

    def get_goals(self) -> GoalSet:
        return self.state.goals

    def get_streak(self) -> int:
        """Current streak length in days."""
        return self.state.streak.current_streak_days

    def get_streak_result(self) -> StreakResult | None:
        return self._last_streak

    def get_pending_milestones(self) -> list[MilestoneEvent]:
        return list(self.state.pending_milestones)

    async def clear_pending_milestones(self) -> None:
        self.state.pending_milestones = []
        await self._persist()

    def should_sync(self, provider_id: str, now: datetime | None = None) -> bool:
        """Return True if the provider's sync interval has elapsed."""
        connection = self.state.connections.get(provider_id)
        if connection is None or not connection.connected:
            return False
        if connection.last_sync_timestamp is None:
            return True
        now = now or self._clock()
        return now - connection.last_sync_timestamp >= self._config.sync.interval_for(provider_id)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect_provider(self, provider_id: str) -> bool:
        """Authorize a provider, make it active, and run a first sync.

        Returns False (with ``last_sync_error`` set) if the provider is
        unknown, unavailable, or access was not granted.
        """
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            self._last_sync_error = f"Unknown provider '{provider_id}'"
            return False
        if isinstance(adapter, UnavailableAdapter):
            self._last_sync_error = adapter.reason
            return False

        if not await self._connect_adapter(adapter):
            return False

        connection = self.state.connection(provider_id)
        if not connection.connected:
            # A fresh connection always bootstraps the full window.
            self.state.cursors[provider_id] = SyncCursor()
        connection.connected = True
        self.state.active_provider = provider_id
        self._last_sync_error = None
        await self._persist()
        logger.info("Connected %s", provider_id)

        await self.sync_now(trigger="connect")
        return True

    async def disconnect_provider(self, provider_id: str) -> None:
        adapter = self._adapters.get(provider_id)
        if adapter is not None:
            await adapter.disconnect()
        connection = self.state.connection(provider_id)
        connection.connected = False
        self.state.cursors[provider_id] = SyncCursor()
        if self.state.active_provider == provider_id:
            self.state.active_provider = None
            self._current_metrics = None
        await self._persist()
        logger.info("Disconnected %s", provider_id)

    async def restore_provider_connection(self) -> bool:
        """Re-authorize the remembered provider at startup.

        Clears the remembered provider if it is no longer available.
        """
        provider_id = self.state.active_provider
        if not provider_id:
            return False
        adapter = self._adapters.get(provider_id)
        if adapter is None or isinstance(adapter, UnavailableAdapter):
            logger.info("Remembered provider %s is unavailable, clearing it", provider_id)
            self.state.active_provider = None
            self.state.connection(provider_id).connected = False
            await self._persist()
            return False
        if not await self._connect_adapter(adapter):
            self.state.active_provider = None
            self.state.connection(provider_id).connected = False
            await self._persist()
            return False
        self.state.connection(provider_id).connected = True
        logger.info("Restored connection to %s", provider_id)
        return True

    async def _connect_adapter(self, adapter: HealthProviderAdapter) -> bool:
        try:
            connected = await with_deadline(
                adapter.connect(),
                self._config.deadlines.connect,
                False,
                label=f"{adapter.PROVIDER_ID}.connect",
            )
        except (ProviderUnavailable, PermissionDenied) as exc:
            self._last_sync_error = exc.reason
            return False
        except Exception as exc:
            logger.warning("Connecting %s failed: %s", adapter.PROVIDER_ID, exc)
            self._last_sync_error = f"Could not connect to {adapter.DISPLAY_NAME}"
            return False
        if not connected:
            self._last_sync_error = PermissionDenied.default_reason
        return connected

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_now(
        self,
        user_id: str | None = None,
        show_progress_indicator: bool = False,
        trigger: str = "manual",
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Sync the active provider: backfill, today, derived events, persist.

        Args:
            user_id:                 Override for the signed-in user.
            show_progress_indicator: Expose backfill progress via
                                     ``backfill_progress`` while running.
            trigger:                 Why the sync ran (for logs).
            on_progress:             Called with each BackfillProgress.
        """
        provider_id = self.active_provider_id
        if not provider_id:
            return SyncResult(provider_id=None, status="skipped", error="No provider connected", synced_at=self._clock())
        adapter = self._adapters.get(provider_id)
        if adapter is None or isinstance(adapter, UnavailableAdapter):
            reason = adapter.reason if isinstance(adapter, UnavailableAdapter) else f"Unknown provider '{provider_id}'"
            self._last_sync_error = reason
            return SyncResult(provider_id=provider_id, status="error", error=reason, synced_at=self._clock())

        lock = self._locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            self._syncing += 1
            try:
                logger.info("Sync %s started (%s)", provider_id, trigger)
                return await self._run_sync(provider_id, adapter, user_id, show_progress_indicator, on_progress)
            finally:
                self._syncing -= 1
                self._progress = None

    async def _run_sync(
        self,
        provider_id: str,
        adapter: HealthProviderAdapter,
        user_id: str | None,
        show_progress: bool,
        on_progress: ProgressCallback | None,
    ) -> SyncResult:
        uid = user_id or self._get_current_user_id()
        result = SyncResult(provider_id=provider_id)
        errors: list[str] = []
        auth_expired = False
        retry_from: date | None = None

        if not adapter.authorized and not await self._connect_adapter(adapter):
            result.status = "error"
            result.error = self._last_sync_error
            result.synced_at = self._clock()
            return result

        cursor = self.state.cursor(provider_id)

        # 1. Backfill
        if uid:
            engine = BackfillEngine(adapter, self._backend, config=self._config, clock=self._clock, sleep=self._sleep)
            last: BackfillProgress | None = None
            async for progress in engine.run(uid, cursor, self.state.goals):
                if progress.day_submitted and not progress.failed_days:
                    cursor.last_sync_timestamp = self._clock()
                if show_progress:
                    self._progress = progress
                if on_progress is not None:
                    on_progress(progress)
                last = progress
            if last is not None:
                result.days_synced.extend(last.synced_days)
                result.days_failed.extend(last.failed_days)
                auth_expired = last.auth_expired
                if last.synced_days and not cursor.initial_backfill_done:
                    cursor.initial_backfill_done = True
                if last.failed_days:
                    errors.append(f"{len(last.failed_days)} day(s) could not be synced")
                retry_from = last.retry_from
                if retry_from is not None:
                    # The next window starts at the oldest day still unsynced.
                    cursor.last_sync_timestamp = resume_timestamp(retry_from, self._clock().tzinfo)

        # 2. Today
        now = self._clock()
        today = now.date()
        metrics = await adapter.fetch_metrics(today, now=now, stored_goals=self.state.goals, config=self._config)
        if metrics is None:
            self._last_sync_error = "Could not read health data"
            result.status = "error"
            result.error = self._last_sync_error
            result.synced_at = now
            await self._persist()
            return result
        self._current_metrics = metrics
        result.metrics = metrics

        # 3. Goals
        if metrics.goals is not None and metrics.goals != self.state.goals:
            logger.info("Adopting provider goals %s", metrics.goals)
            self.state.goals = metrics.goals

        online = bool(uid) and not auth_expired

        # 4-5. Submit today, then rings-closed
        if online:
            try:
                submitted = await with_deadline(
                    self._submit(uid, metrics), self._config.deadlines.backend, False, label=f"submit {today}"
                )
                if not submitted:
                    raise SyncTimeout("Timed out submitting today's activity")
                result.days_synced.append(today)
                if retry_from is None:
                    cursor.last_sync_timestamp = self._clock()
            except AuthExpired:
                online = False
            except SyncError as exc:
                result.days_failed.append(today)
                errors.append(exc.reason)
                logger.warning("Submitting %s failed: %s", today, exc.reason)

        if online:
            detector = DerivedEventDetector(self._backend, config=self._config, dedup=self._dedup)
            try:
                result.rings = await detector.check_rings_closed(uid, metrics, self.state.goals)
            except AuthExpired:
                online = False
            except SyncError as exc:
                logger.warning("Rings-closed check failed: %s", exc.reason)
        if result.rings is None:
            result.rings = RingProgress.from_metrics(metrics, self.state.goals)

        # 6. Streak
        streak_calc = StreakCalculator(
            adapter, self._backend if online else None, config=self._config, clock=self._clock, dedup=self._dedup
        )
        streak = await streak_calc.calculate(uid if online else None, self.state.streak)
        weekly_workouts = None
        if streak is not None:
            self.state.streak = streak.to_state(self.state.streak)
            self._last_streak = streak
            result.streak = streak
            weekly_workouts = streak.weekly_workouts
            if streak.milestone is not None:
                self.state.pending_milestones.append(streak.milestone)

        # 7. Personal records
        self.state.personal_records, beaten = update_personal_records(
            self.state.personal_records, metrics, weekly_workouts
        )
        for update in beaten:
            logger.info("New personal record %s: %d (was %d)", update.record, update.value, update.previous)

        # 8. Persist
        self.state.connection(provider_id).last_sync_timestamp = self._clock()
        self._last_sync_error = errors[0] if errors else None
        result.error = self._last_sync_error
        result.status = "partial" if errors else "success"
        result.synced_at = self._clock()
        await self._persist()
        logger.info(
            "Sync %s finished: %s, %d day(s) submitted, %d failed",
            provider_id, result.status, len(result.days_synced), len(result.days_failed),
        )
        return result

    async def _submit(self, user_id: str, metrics: DailyMetrics) -> bool:
        await self._backend.submit_daily_metrics(user_id, metrics)
        return True

    # ------------------------------------------------------------------
    # Weight and goals
    # ------------------------------------------------------------------

    async def sync_weight(self) -> WeightState:
        """Refresh current weight, weight history and BMI from the active provider."""
        provider_id = self.active_provider_id
        adapter = self._adapters.get(provider_id) if provider_id else None
        if adapter is None or not adapter.authorized:
            return self.state.weight

        timeout = self._config.deadlines.weight
        label = f"{adapter.PROVIDER_ID}.weight"
        latest = await with_deadline(adapter.fetch_weight(), timeout, None, label=label, recover_errors=True)
        history = await with_deadline(
            adapter.fetch_weight_history(self._config.weight.history_days),
            timeout,
            [],
            label=f"{label}_history",
            recover_errors=True,
        )
        bmi = await with_deadline(adapter.fetch_bmi(), timeout, None, label=f"{label}_bmi", recover_errors=True)

        weight = self.state.weight
        samples: list[WeightSample] = []
        for raw in history:
            try:
                samples.append(WeightSample(value_kg=round(weight_to_kg(raw.quantity), 2), measured_at=raw.measured_at))
            except ValueError as exc:
                logger.warning("Dropping weight reading: %s", exc)
        if samples:
            weight.history = samples[-self._config.weight.max_entries:]
        if latest is not None:
            try:
                weight.current = WeightSample(value_kg=round(weight_to_kg(latest.quantity), 2), measured_at=latest.measured_at)
            except ValueError as exc:
                logger.warning("Dropping latest weight reading: %s", exc)
        elif weight.history:
            weight.current = weight.history[-1]
        if bmi is not None:
            weight.bmi = bmi.value
        await self._persist()
        return weight

    async def update_goals(self, changes: dict[str, int]) -> GoalSet:
        """Apply a partial goal update.

        Raises:
            ValueError: For unknown goal names or non-positive values.
        """
        allowed = set(GoalSet.__dataclass_fields__)
        updates: dict[str, int] = {}
        for name, value in changes.items():
            if value is None:
                continue
            if name not in allowed:
                raise ValueError(f"Unknown goal '{name}'")
            if int(value) <= 0:
                raise ValueError(f"Goal '{name}' must be positive, got {value}")
            updates[name] = int(value)
        self.state.goals = replace(self.state.goals, **updates)
        await self._persist()
        return self.state.goals

    async def set_weight_goal(self, goal_kg: float) -> WeightState:
        if goal_kg <= 0:
            raise ValueError(f"Weight goal must be positive, got {goal_kg}")
        self.state.weight.goal_kg = float(goal_kg)
        await self._persist()
        return self.state.weight

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self) -> None:
        try:
            await self._store.save(self._state_key, self.state.to_sections())
        except Exception:
            logger.exception("Persisting engine state failed")

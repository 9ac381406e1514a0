"""Load, validate, and hot-reload the healthsync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an edit; no restart required.

Usage::

    from src.healthsync.config_loader import get_sync_config

    config = get_sync_config()
    config.backfill.bootstrap_days        # 28
    config.deadlines.summary              # 10.0
    config.milestone_for(30).name         # "Monthly Momentum"
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from src.healthsync.base import GoalSet

logger = logging.getLogger("healthsync.config")

_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class BackfillConfig:
    """Historical backfill window settings."""

    bootstrap_days: int = 28
    max_catchup_days: int = 28
    min_catchup_days: int = 1
    inter_day_delay_ms: int = 100

    @property
    def inter_day_delay_s(self) -> float:
        return self.inter_day_delay_ms / 1000.0


@dataclass
class DeadlineConfig:
    """Per-call deadlines in seconds."""

    connect: float = 30.0
    summary: float = 10.0
    sample: float = 8.0
    workouts: float = 15.0
    weight: float = 10.0
    backend: float = 10.0


@dataclass
class Milestone:
    """A streak length that earns a one-time reward.

    Attributes:
        days:   Streak length that triggers the milestone.
        id:     Stable milestone id recorded in the backend.
        name:   Display name.
        reward: Opaque reward descriptor passed to the client.
    """

    days: int
    id: str
    name: str
    reward: str


@dataclass
class StreakConfig:
    lookback_days: int = 60
    milestones: list[Milestone] = field(default_factory=list)


@dataclass
class SyncIntervalConfig:
    """Background sync cadence."""

    poll_seconds: int = 300
    default_interval_hours: float = 3.0
    intervals_hours: dict[str, float] = field(default_factory=dict)

    def interval_for(self, provider_id: str) -> timedelta:
        hours = self.intervals_hours.get(provider_id, self.default_interval_hours)
        return timedelta(hours=hours)


@dataclass
class WeightConfig:
    history_days: int = 1095
    max_entries: int = 500


@dataclass
class SyncConfig:
    """Complete, validated engine configuration.

    This is the single in-memory representation of sync_config.yaml.

    Attributes:
        version:   Config schema version string.
        backfill:  Backfill window settings.
        deadlines: Per-call deadlines.
        streaks:   Streak lookback and milestones (ascending by days).
        goals:     Default GoalSet used when nothing is stored.
        sync:      Background sync cadence.
        weight:    Weight history limits.
    """

    version: str
    backfill: BackfillConfig
    deadlines: DeadlineConfig
    streaks: StreakConfig
    goals: GoalSet
    sync: SyncIntervalConfig
    weight: WeightConfig
    _raw: dict = field(default_factory=dict, repr=False)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    def milestone_for(self, days: int) -> Milestone | None:
        """Return the milestone triggered at exactly ``days``, if any."""
        for milestone in self.streaks.milestones:
            if milestone.days == days:
                return milestone
        return None

    def next_milestone(self, days: int) -> Milestone | None:
        """Return the first milestone strictly beyond ``days``, if any."""
        for milestone in self.streaks.milestones:
            if milestone.days > days:
                return milestone
        return None


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Every problem is collected before raising so one run reports them all.

    Raises:
        ConfigValidationError: If any value is missing, mistyped or out of range.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: Any, path: str, cast=int, minimum=0) -> Any:
        value = section.get(key, default)
        try:
            number = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{path}.{key} = {number} must be >= {minimum}")
        return number

    def _section(key: str) -> dict:
        value = raw.get(key) or {}
        if not isinstance(value, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return value

    version = str(raw.get("version", "1.0"))

    # ── Backfill ──
    bf_raw = _section("backfill")
    backfill = BackfillConfig(
        bootstrap_days=_number(bf_raw, "bootstrap_days", 28, "backfill", minimum=1),
        max_catchup_days=_number(bf_raw, "max_catchup_days", 28, "backfill", minimum=1),
        min_catchup_days=_number(bf_raw, "min_catchup_days", 1, "backfill", minimum=1),
        inter_day_delay_ms=_number(bf_raw, "inter_day_delay_ms", 100, "backfill"),
    )
    if backfill.min_catchup_days > backfill.max_catchup_days:
        errors.append(
            f"backfill.min_catchup_days ({backfill.min_catchup_days}) exceeds "
            f"max_catchup_days ({backfill.max_catchup_days})"
        )

    # ── Deadlines ──
    dl_raw = _section("deadlines")
    defaults = DeadlineConfig()
    deadlines = DeadlineConfig(
        **{
            name: _number(dl_raw, name, getattr(defaults, name), "deadlines", cast=float, minimum=0.001)
            for name in ("connect", "summary", "sample", "workouts", "weight", "backend")
        }
    )

    # ── Streaks ──
    st_raw = _section("streaks")
    milestones: list[Milestone] = []
    ms_raw = st_raw.get("milestones") or {}
    if not isinstance(ms_raw, dict):
        errors.append("streaks.milestones must be a mapping of days→milestone")
        ms_raw = {}
    for days_key, cfg in ms_raw.items():
        try:
            days = int(days_key)
        except (TypeError, ValueError):
            errors.append(f"streaks.milestones key {days_key!r} must be an integer day count")
            continue
        if not isinstance(cfg, dict):
            errors.append(f"streaks.milestones.{days} must be a mapping")
            continue
        milestones.append(
            Milestone(
                days=days,
                id=str(cfg.get("id") or f"streak_{days}"),
                name=str(cfg.get("name", f"{days}-day streak")),
                reward=str(cfg.get("reward", "")),
            )
        )
    milestones.sort(key=lambda m: m.days)
    streaks = StreakConfig(
        lookback_days=_number(st_raw, "lookback_days", 60, "streaks", minimum=1),
        milestones=milestones,
    )

    # ── Goals ──
    gl_raw = _section("goals")
    goal_defaults = GoalSet()
    goals = GoalSet(
        **{
            name: _number(gl_raw, name, getattr(goal_defaults, name), "goals", minimum=1)
            for name in ("move_calories", "exercise_minutes", "stand_hours", "steps")
        }
    )

    # ── Sync cadence ──
    sy_raw = _section("sync")
    intervals: dict[str, float] = {}
    for provider_id, hours in (sy_raw.get("intervals_hours") or {}).items():
        try:
            intervals[provider_id] = float(hours)
        except (TypeError, ValueError):
            errors.append(f"sync.intervals_hours.{provider_id} must be a number, got {hours!r}")
    sync = SyncIntervalConfig(
        poll_seconds=_number(sy_raw, "poll_seconds", 300, "sync", minimum=1),
        default_interval_hours=_number(sy_raw, "default_interval_hours", 3.0, "sync", cast=float),
        intervals_hours=intervals,
    )

    # ── Weight ──
    wt_raw = _section("weight")
    weight = WeightConfig(
        history_days=_number(wt_raw, "history_days", 1095, "weight", minimum=1),
        max_entries=_number(wt_raw, "max_entries", 500, "weight", minimum=1),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        backfill=backfill,
        deadlines=deadlines,
        streaks=streaks,
        goals=goals,
        sync=sync,
        weight=weight,
        _raw=raw,
    )


def build_sync_config(raw: dict) -> SyncConfig:
    """Validate an already-parsed mapping.  Used by tests and overrides."""
    return _validate_and_build(raw)


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Force-reload the config from disk and replace the singleton.

    If the new file fails validation, the previous config stays active and
    the error propagates.
    """
    global _config
    new_config = load_sync_config(path)
    with _config_lock:
        _config = new_config
    logger.info("Sync config reloaded (v%s)", new_config.version)
    return new_config

"""Tests for sync_config.yaml loading and validation."""

from __future__ import annotations

import textwrap
from datetime import timedelta
from pathlib import Path

import pytest

from src.healthsync.base import GoalSet
from src.healthsync.config_loader import (
    ConfigValidationError,
    SyncConfig,
    _validate_and_build,
    get_sync_config,
    load_sync_config,
    reload_sync_config,
)


@pytest.fixture
def bundled_config() -> SyncConfig:
    return load_sync_config()


class TestConfigLoading:
    """Tests for loading the bundled sync_config.yaml."""

    def test_load_default_config(self, bundled_config: SyncConfig) -> None:
        assert bundled_config.version == "1.0"
        assert bundled_config.backfill.bootstrap_days == 28
        assert bundled_config.backfill.max_catchup_days == 28

    def test_milestones_sorted_with_rewards(self, bundled_config: SyncConfig) -> None:
        days = [m.days for m in bundled_config.streaks.milestones]
        assert days == [7, 30, 100, 365]
        assert all(m.reward for m in bundled_config.streaks.milestones)

    def test_default_goals(self, bundled_config: SyncConfig) -> None:
        assert bundled_config.goals == GoalSet(500, 30, 12, 10000)

    def test_streak_lookback(self, bundled_config: SyncConfig) -> None:
        assert bundled_config.streaks.lookback_days == 60

    def test_milestone_lookups(self, bundled_config: SyncConfig) -> None:
        assert bundled_config.milestone_for(30).id == "streak_30"
        assert bundled_config.milestone_for(31) is None
        assert bundled_config.next_milestone(30).days == 100
        assert bundled_config.next_milestone(365) is None

    def test_interval_falls_back_to_default(self, bundled_config: SyncConfig) -> None:
        assert bundled_config.sync.interval_for("apple_health") == timedelta(hours=3)
        assert bundled_config.sync.interval_for("whoop") == timedelta(hours=3)

    def test_singleton_is_cached(self) -> None:
        assert get_sync_config() is get_sync_config()


class TestConfigValidation:
    def test_empty_mapping_uses_defaults(self) -> None:
        config = _validate_and_build({})
        assert config.deadlines.summary == 10.0
        assert config.streaks.milestones == []

    def test_errors_are_aggregated(self) -> None:
        raw = {
            "backfill": {"bootstrap_days": "lots", "min_catchup_days": 0},
            "deadlines": {"summary": -1},
        }
        with pytest.raises(ConfigValidationError) as exc_info:
            _validate_and_build(raw)
        message = str(exc_info.value)
        assert "3 validation error(s)" in message
        assert "backfill.bootstrap_days" in message
        assert "deadlines.summary" in message

    def test_bad_milestone_key(self) -> None:
        with pytest.raises(ConfigValidationError, match="integer day count"):
            _validate_and_build({"streaks": {"milestones": {"week": {"id": "w"}}}})

    def test_min_above_max_rejected(self) -> None:
        with pytest.raises(ConfigValidationError, match="exceeds"):
            _validate_and_build({"backfill": {"min_catchup_days": 10, "max_catchup_days": 5}})

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("backfill: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_sync_config(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_sync_config(tmp_path / "absent.yaml")

    def test_reload_replaces_singleton(self, tmp_path: Path) -> None:
        path = tmp_path / "custom.yaml"
        path.write_text(
            textwrap.dedent(
                """
                version: "2.0"
                backfill:
                  bootstrap_days: 14
                """
            )
        )
        try:
            config = reload_sync_config(path)
            assert config.version == "2.0"
            assert get_sync_config() is config
            assert config.backfill.bootstrap_days == 14
        finally:
            reload_sync_config()

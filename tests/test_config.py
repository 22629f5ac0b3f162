"""Tests for GateConfig overrides."""

import json

import pytest

from config import GateConfig
from core.exceptions import ConfigurationError
from risk.portfolio_commander import PortfolioCommander, PortfolioConfig


class TestApplyOverrides:

    def test_scalar_is_coerced(self, restore_config):
        GateConfig.apply_overrides({"loss_streak_lock": "4"})

        assert GateConfig.LOSS_STREAK_LOCK == 4
        assert PortfolioConfig().loss_streak_lock == 4

    def test_override_reaches_new_services(self, restore_config, now):
        GateConfig.apply_overrides({"MAX_SIMULTANEOUS_TRADES": 1})

        portfolio = PortfolioCommander(clock=lambda: now)
        assert portfolio.config.max_positions == 1

    def test_table_replaced_by_copy(self, restore_config):
        limits = {"TREND_DAY": 0.5}
        GateConfig.apply_overrides({"EXPOSURE_LIMITS": limits})
        limits["TREND_DAY"] = 0.9

        assert GateConfig.EXPOSURE_LIMITS == {"TREND_DAY": 0.5}

    @pytest.mark.parametrize("key", ["NOT_A_SETTING", "_OVERRIDABLE_TABLES"])
    def test_unknown_key_rejected(self, restore_config, key):
        with pytest.raises(ConfigurationError) as exc:
            GateConfig.apply_overrides({key: 1})
        assert exc.value.code == "UNKNOWN_CONFIG_KEY"

    def test_wrong_table_type_rejected(self, restore_config):
        with pytest.raises(ConfigurationError) as exc:
            GateConfig.apply_overrides({"EXPOSURE_LIMITS": [0.5]})
        assert exc.value.code == "INVALID_CONFIG_VALUE"

    def test_uncoercible_scalar_rejected(self, restore_config):
        with pytest.raises(ConfigurationError) as exc:
            GateConfig.apply_overrides({"LOSS_STREAK_LOCK": "three"})

        assert exc.value.code == "INVALID_CONFIG_VALUE"
        assert GateConfig.LOSS_STREAK_LOCK == 3


class TestOverridesFile:

    def test_load_json_file(self, restore_config, tmp_path):
        path = tmp_path / "gate.json"
        path.write_text(json.dumps({"confidence_min_score": 55, "CRITICAL_GUARDS": ["LOCK_STATUS"]}))

        GateConfig.load_overrides_file(path)

        assert GateConfig.CONFIDENCE_MIN_SCORE == 55
        assert GateConfig.CRITICAL_GUARDS == ["LOCK_STATUS"]

    def test_unreadable_file(self, restore_config, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError) as exc:
            GateConfig.load_overrides_file(path)
        assert exc.value.code == "CONFIG_FILE_UNREADABLE"

        with pytest.raises(ConfigurationError):
            GateConfig.load_overrides_file(tmp_path / "missing.json")

    def test_file_must_hold_object(self, restore_config, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")

        with pytest.raises(ConfigurationError) as exc:
            GateConfig.load_overrides_file(path)
        assert exc.value.code == "INVALID_CONFIG_FILE"


def test_snapshot_is_a_copy():
    snapshot = GateConfig.snapshot()

    assert snapshot["LOSS_STREAK_LOCK"] == GateConfig.LOSS_STREAK_LOCK
    assert "_OVERRIDABLE_TABLES" not in snapshot
    snapshot["EXPOSURE_LIMITS"]["PANIC_DAY"] = 1.0
    assert GateConfig.EXPOSURE_LIMITS["PANIC_DAY"] == 0.1

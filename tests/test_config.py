"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for quota configs.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
import yaml

from token_quota.config.loader import (
    PlanConfig,
    PurchaseConfig,
    TokenCostConfig,
    TrialWindowConfig,
    default_quota_config,
    load_quota_config
)
from token_quota.core.plans import Plan, UNLIMITED_DAILY_LIMIT, parse_plan


def valid_config_data():
    return {
        "plans": {
            "free": {"daily_limit": 20},
            "standard": {"daily_limit": 100},
            "premium": {"daily_limit": "unlimited"}
        },
        "trial": {
            "trial_end": "2026-03-31T23:59:59+05:30",
            "grace_period_days": 7
        }
    }


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config = load_quota_config(self._write_config(valid_config_data()))

        assert config.daily_limit_for(Plan.FREE) == 20
        assert config.daily_limit_for(Plan.STANDARD) == 100
        assert config.daily_limit_for(Plan.PREMIUM) == UNLIMITED_DAILY_LIMIT
        assert config.plans[Plan.PREMIUM].is_unlimited

        ist = timezone(timedelta(hours=5, minutes=30))
        assert config.trial.trial_end == datetime(2026, 3, 31, 23, 59, 59, tzinfo=ist)
        assert config.trial.grace_period_days == 7
        assert config.trial.grace_period_end == datetime(2026, 4, 7, 23, 59, 59, tzinfo=ist)

    def test_optional_sections_use_defaults(self):
        config = load_quota_config(self._write_config(valid_config_data()))
        defaults = default_quota_config()

        assert config.token_costs == defaults.token_costs
        assert config.purchase == defaults.purchase

    def test_minus_one_daily_limit_means_unlimited(self):
        data = valid_config_data()
        data["plans"]["premium"]["daily_limit"] = -1

        config = load_quota_config(self._write_config(data))

        assert config.daily_limit_for(Plan.PREMIUM) == UNLIMITED_DAILY_LIMIT

    def test_token_costs_section(self):
        data = valid_config_data()
        data["token_costs"] = {
            "default": 12,
            "languages": {"EN": 12, "ta": 18},
            "study_modes": {"quick": 0.5, "standard": 1}
        }

        config = load_quota_config(self._write_config(data))

        assert config.token_costs.default_cost == 12
        assert config.token_costs.languages == {"en": 12, "ta": 18}
        assert config.token_costs.study_modes == {"quick": 0.5, "standard": 1.0}

    def test_can_purchase_defaults_per_plan(self):
        config = load_quota_config(self._write_config(valid_config_data()))

        assert config.can_purchase(Plan.FREE)
        assert config.can_purchase(Plan.STANDARD)
        assert not config.can_purchase(Plan.PREMIUM)

    def test_can_purchase_override(self):
        data = valid_config_data()
        data["plans"]["free"]["can_purchase"] = False

        config = load_quota_config(self._write_config(data))

        assert not config.can_purchase(Plan.FREE)

    def test_non_boolean_can_purchase_rejected(self):
        data = valid_config_data()
        data["plans"]["free"]["can_purchase"] = "sometimes"

        with pytest.raises(ValueError, match="'can_purchase' in plans.free"):
            load_quota_config(self._write_config(data))

    def test_purchase_without_upper_bound(self):
        data = valid_config_data()
        data["purchase"] = {"max_amount": None}

        config = load_quota_config(self._write_config(data))

        assert config.purchase.max_amount is None

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError, match="Quota config file not found"):
            load_quota_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("plans: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_quota_config(config_path)

    def test_empty_file_raises(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_quota_config(config_path)

    def test_unknown_top_level_key_rejected(self):
        data = valid_config_data()
        data["budget"] = {"daily": 10}

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_quota_config(self._write_config(data))

    def test_missing_plans_rejected(self):
        data = valid_config_data()
        del data["plans"]

        with pytest.raises(ValueError, match="Missing required 'plans' section"):
            load_quota_config(self._write_config(data))

    def test_missing_single_plan_rejected(self):
        data = valid_config_data()
        del data["plans"]["standard"]

        with pytest.raises(ValueError, match="Missing required plan 'standard'"):
            load_quota_config(self._write_config(data))

    def test_unknown_plan_rejected(self):
        data = valid_config_data()
        data["plans"]["plus"] = {"daily_limit": 50}

        with pytest.raises(ValueError, match="Unknown plans"):
            load_quota_config(self._write_config(data))

    def test_negative_daily_limit_rejected(self):
        data = valid_config_data()
        data["plans"]["free"]["daily_limit"] = -5

        with pytest.raises(ValueError, match="must be >= 0"):
            load_quota_config(self._write_config(data))

    def test_non_integer_daily_limit_rejected(self):
        data = valid_config_data()
        data["plans"]["free"]["daily_limit"] = 2.5

        with pytest.raises(ValueError, match="must be an integer or 'unlimited'"):
            load_quota_config(self._write_config(data))

    def test_missing_trial_rejected(self):
        data = valid_config_data()
        del data["trial"]

        with pytest.raises(ValueError, match="Missing required 'trial' section"):
            load_quota_config(self._write_config(data))

    def test_naive_trial_end_rejected(self):
        data = valid_config_data()
        data["trial"]["trial_end"] = "2026-03-31T23:59:59"

        with pytest.raises(ValueError, match="timezone"):
            load_quota_config(self._write_config(data))

    def test_unparseable_trial_end_rejected(self):
        data = valid_config_data()
        data["trial"]["trial_end"] = "end of march"

        with pytest.raises(ValueError, match="ISO-8601"):
            load_quota_config(self._write_config(data))

    def test_negative_grace_period_rejected(self):
        data = valid_config_data()
        data["trial"]["grace_period_days"] = -1

        with pytest.raises(ValueError, match="grace_period_days"):
            load_quota_config(self._write_config(data))

    def test_invalid_study_mode_multiplier_rejected(self):
        data = valid_config_data()
        data["token_costs"] = {"study_modes": {"quick": 0}}

        with pytest.raises(ValueError, match="token_costs.study_modes.quick"):
            load_quota_config(self._write_config(data))

    def test_invalid_purchase_cap_rejected(self):
        data = valid_config_data()
        data["purchase"] = {"max_amount": 0}

        with pytest.raises(ValueError, match="max_amount"):
            load_quota_config(self._write_config(data))


class TestConfigObjects:
    """Test configuration value object validation."""

    def test_default_config(self):
        config = default_quota_config()

        assert config.daily_limit_for(Plan.FREE) == 20
        assert config.daily_limit_for(Plan.STANDARD) == 100
        assert config.daily_limit_for(Plan.PREMIUM) == UNLIMITED_DAILY_LIMIT
        assert config.trial.grace_period_days == 7
        assert config.purchase.max_amount == 10000

    def test_plan_config_rejects_negative_limit(self):
        with pytest.raises(ValueError, match="daily_limit cannot be negative"):
            PlanConfig(daily_limit=-1)

    def test_trial_window_requires_timezone(self):
        with pytest.raises(ValueError, match="timezone aware"):
            TrialWindowConfig(trial_end=datetime(2026, 3, 31), grace_period_days=7)

    def test_token_cost_config_rejects_zero_cost(self):
        with pytest.raises(ValueError, match="default token cost must be > 0"):
            TokenCostConfig(default_cost=0, languages={}, study_modes={})

    def test_purchase_config_rejects_zero_cap(self):
        with pytest.raises(ValueError, match="max_amount must be > 0"):
            PurchaseConfig(max_amount=0)


class TestPlans:
    """Test plan parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("free", Plan.FREE),
        (" Standard ", Plan.STANDARD),
        ("PREMIUM", Plan.PREMIUM),
        (Plan.FREE, Plan.FREE),
    ])
    def test_parse_plan(self, value, expected):
        assert parse_plan(value) == expected

    @pytest.mark.parametrize("value", ["plus", "", None, 3])
    def test_parse_plan_rejects_unknown(self, value):
        with pytest.raises(ValueError, match="Invalid plan"):
            parse_plan(value)

    def test_only_premium_is_unlimited(self):
        assert Plan.PREMIUM.is_unlimited
        assert not Plan.STANDARD.is_unlimited
        assert not Plan.FREE.is_unlimited

"""
Configuration management and loading.

Handles plan allowances, the global trial window and token cost tables.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

import yaml

from token_quota.core.plans import Plan, UNLIMITED_DAILY_LIMIT


DEFAULT_TRIAL_END = "2026-03-31T23:59:59+05:30"
DEFAULT_GRACE_PERIOD_DAYS = 7

DEFAULT_DAILY_LIMITS = {
    Plan.FREE: 20,
    Plan.STANDARD: 100,
    Plan.PREMIUM: UNLIMITED_DAILY_LIMIT,
}

# Unlimited plans have nothing to top up
DEFAULT_CAN_PURCHASE = {
    Plan.FREE: True,
    Plan.STANDARD: True,
    Plan.PREMIUM: False,
}

DEFAULT_LANGUAGE_COSTS = {
    "en": 10,
    "hi": 15,
    "ml": 15,
}

DEFAULT_STUDY_MODE_MULTIPLIERS = {
    "quick": 0.5,
    "standard": 1.0,
    "deep": 1.5,
    "lectio": 1.2,
    "sermon": 2.0,
}

DEFAULT_MAX_PURCHASE = 10000


@dataclass(frozen=True)
class PlanConfig:
    """Daily allowance for a single plan."""
    daily_limit: int
    can_purchase: bool = True

    def __post_init__(self):
        """Validate daily limit is non-negative."""
        if self.daily_limit < 0:
            raise ValueError("daily_limit cannot be negative")

    @property
    def is_unlimited(self) -> bool:
        return self.daily_limit >= UNLIMITED_DAILY_LIMIT


@dataclass(frozen=True)
class TrialWindowConfig:
    """Globally scoped standard-plan trial window.

    Read by the tier resolver at call time, never mutated by it.
    """
    trial_end: datetime
    grace_period_days: int

    def __post_init__(self):
        """Validate the window is timezone aware and the grace period sane."""
        if self.trial_end.tzinfo is None:
            raise ValueError("trial_end must be timezone aware")
        if self.grace_period_days < 0:
            raise ValueError("grace_period_days cannot be negative")

    @property
    def grace_period_end(self) -> datetime:
        return self.trial_end + timedelta(days=self.grace_period_days)


@dataclass(frozen=True)
class TokenCostConfig:
    """Base token cost per language and multiplier per study mode."""
    default_cost: int
    languages: Dict[str, int]
    study_modes: Dict[str, float]

    def __post_init__(self):
        """Validate costs and multipliers are positive."""
        if self.default_cost <= 0:
            raise ValueError("default token cost must be > 0")
        for language, cost in self.languages.items():
            if cost <= 0:
                raise ValueError(f"token cost for language '{language}' must be > 0")
        for mode, multiplier in self.study_modes.items():
            if multiplier <= 0:
                raise ValueError(f"multiplier for study mode '{mode}' must be > 0")


@dataclass(frozen=True)
class PurchaseConfig:
    """Bounds for a single purchased top-up."""
    max_amount: Optional[int] = DEFAULT_MAX_PURCHASE

    def __post_init__(self):
        if self.max_amount is not None and self.max_amount <= 0:
            raise ValueError("max_amount must be > 0")


@dataclass(frozen=True)
class QuotaConfig:
    """Complete token quota configuration."""
    plans: Dict[Plan, PlanConfig]
    trial: TrialWindowConfig
    token_costs: TokenCostConfig
    purchase: PurchaseConfig = field(default_factory=PurchaseConfig)

    def daily_limit_for(self, plan: Plan) -> int:
        """Get the daily limit a ledger of this plan refills to."""
        return self.plans[plan].daily_limit

    def can_purchase(self, plan: Plan) -> bool:
        """Whether ledgers of this plan accept purchased top-ups."""
        return self.plans[plan].can_purchase


def default_quota_config() -> QuotaConfig:
    """Build the configuration used when no YAML file is supplied."""
    return QuotaConfig(
        plans={
            plan: PlanConfig(daily_limit=limit, can_purchase=DEFAULT_CAN_PURCHASE[plan])
            for plan, limit in DEFAULT_DAILY_LIMITS.items()
        },
        trial=TrialWindowConfig(
            trial_end=datetime.fromisoformat(DEFAULT_TRIAL_END),
            grace_period_days=DEFAULT_GRACE_PERIOD_DAYS
        ),
        token_costs=TokenCostConfig(
            default_cost=DEFAULT_LANGUAGE_COSTS["en"],
            languages=dict(DEFAULT_LANGUAGE_COSTS),
            study_modes=dict(DEFAULT_STUDY_MODE_MULTIPLIERS)
        ),
        purchase=PurchaseConfig()
    )


def load_quota_config(path: str) -> QuotaConfig:
    """Load and validate token quota configuration from YAML file.

    Strict validation ensures a typo in a plan name or limit can never
    silently hand out the wrong daily allowance.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated QuotaConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Quota config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'plans', 'trial', 'token_costs', 'purchase'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'plans' not in raw_config:
        raise ValueError("Missing required 'plans' section")
    plans = _parse_plans(raw_config['plans'])

    if 'trial' not in raw_config:
        raise ValueError("Missing required 'trial' section")
    trial = _parse_trial(raw_config['trial'])

    defaults = default_quota_config()

    token_costs = defaults.token_costs
    if raw_config.get('token_costs') is not None:
        token_costs = _parse_token_costs(raw_config['token_costs'])

    purchase = defaults.purchase
    if raw_config.get('purchase') is not None:
        purchase = _parse_purchase(raw_config['purchase'])

    return QuotaConfig(
        plans=plans,
        trial=trial,
        token_costs=token_costs,
        purchase=purchase
    )


def _parse_plans(data) -> Dict[Plan, PlanConfig]:
    """Parse the plans section; every plan must be present."""
    if not isinstance(data, dict):
        raise ValueError("'plans' must be a dictionary")

    valid_plans = {plan.value for plan in Plan}
    unknown_plans = set(data.keys()) - valid_plans
    if unknown_plans:
        raise ValueError(f"Unknown plans: {unknown_plans}")

    plans = {}
    for plan in Plan:
        if plan.value not in data:
            raise ValueError(f"Missing required plan '{plan.value}'")
        plan_data = data[plan.value]
        if not isinstance(plan_data, dict):
            raise ValueError(f"Plan '{plan.value}' must be a dictionary")

        unknown_keys = set(plan_data.keys()) - {'daily_limit', 'can_purchase'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in plans.{plan.value}: {unknown_keys}")
        if 'daily_limit' not in plan_data:
            raise ValueError(f"Missing required 'daily_limit' in plans.{plan.value}")

        can_purchase = plan_data.get('can_purchase', DEFAULT_CAN_PURCHASE[plan])
        if not isinstance(can_purchase, bool):
            raise ValueError(f"'can_purchase' in plans.{plan.value} must be true or false")

        plans[plan] = PlanConfig(
            daily_limit=_parse_daily_limit(plan_data['daily_limit'], f"plans.{plan.value}"),
            can_purchase=can_purchase
        )
    return plans


def _parse_daily_limit(value, path: str) -> int:
    """Accept a non-negative int, or 'unlimited' / -1 for the sentinel."""
    if isinstance(value, str) and value.strip().lower() == "unlimited":
        return UNLIMITED_DAILY_LIMIT
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'daily_limit' in {path} must be an integer or 'unlimited'")
    if value == -1:
        return UNLIMITED_DAILY_LIMIT
    if value < 0:
        raise ValueError(f"'daily_limit' in {path} must be >= 0")
    return min(value, UNLIMITED_DAILY_LIMIT)


def _parse_trial(data) -> TrialWindowConfig:
    """Parse the trial section."""
    if not isinstance(data, dict):
        raise ValueError("'trial' must be a dictionary")

    unknown_keys = set(data.keys()) - {'trial_end', 'grace_period_days'}
    if unknown_keys:
        raise ValueError(f"Unknown trial keys: {unknown_keys}")

    if 'trial_end' not in data:
        raise ValueError("Missing required 'trial_end' in trial")
    raw_end = data['trial_end']
    if isinstance(raw_end, datetime):
        trial_end = raw_end
    elif isinstance(raw_end, str):
        try:
            trial_end = datetime.fromisoformat(raw_end.replace('Z', '+00:00'))
        except ValueError:
            raise ValueError(f"'trial_end' must be an ISO-8601 timestamp, got {raw_end!r}")
    else:
        raise ValueError("'trial_end' must be an ISO-8601 timestamp")
    if trial_end.tzinfo is None:
        raise ValueError("'trial_end' must include a timezone offset")

    grace_days = data.get('grace_period_days', DEFAULT_GRACE_PERIOD_DAYS)
    if isinstance(grace_days, bool) or not isinstance(grace_days, int) or grace_days < 0:
        raise ValueError("'grace_period_days' must be an integer >= 0")

    return TrialWindowConfig(trial_end=trial_end, grace_period_days=grace_days)


def _parse_token_costs(data) -> TokenCostConfig:
    """Parse the token_costs section, filling gaps from the defaults."""
    if not isinstance(data, dict):
        raise ValueError("'token_costs' must be a dictionary")

    unknown_keys = set(data.keys()) - {'default', 'languages', 'study_modes'}
    if unknown_keys:
        raise ValueError(f"Unknown token_costs keys: {unknown_keys}")

    default_cost = data.get('default', DEFAULT_LANGUAGE_COSTS["en"])
    if isinstance(default_cost, bool) or not isinstance(default_cost, int) or default_cost <= 0:
        raise ValueError("'default' in token_costs must be an integer > 0")

    languages = data.get('languages', DEFAULT_LANGUAGE_COSTS)
    if not isinstance(languages, dict):
        raise ValueError("'languages' in token_costs must be a dictionary")
    for language, cost in languages.items():
        if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
            raise ValueError(f"token_costs.languages.{language} must be an integer > 0")

    study_modes = data.get('study_modes', DEFAULT_STUDY_MODE_MULTIPLIERS)
    if not isinstance(study_modes, dict):
        raise ValueError("'study_modes' in token_costs must be a dictionary")
    for mode, multiplier in study_modes.items():
        if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)) or multiplier <= 0:
            raise ValueError(f"token_costs.study_modes.{mode} must be a number > 0")

    return TokenCostConfig(
        default_cost=default_cost,
        languages={str(k).lower(): v for k, v in languages.items()},
        study_modes={str(k).lower(): float(v) for k, v in study_modes.items()}
    )


def _parse_purchase(data) -> PurchaseConfig:
    """Parse the purchase section."""
    if not isinstance(data, dict):
        raise ValueError("'purchase' must be a dictionary")

    unknown_keys = set(data.keys()) - {'max_amount'}
    if unknown_keys:
        raise ValueError(f"Unknown purchase keys: {unknown_keys}")

    max_amount = data.get('max_amount', DEFAULT_MAX_PURCHASE)
    if max_amount is not None:
        if isinstance(max_amount, bool) or not isinstance(max_amount, int) or max_amount <= 0:
            raise ValueError("'max_amount' in purchase must be an integer > 0 or null")

    return PurchaseConfig(max_amount=max_amount)

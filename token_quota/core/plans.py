"""
Subscription plans and their daily allowances.

Defines the plan tiers a ledger can be opened under.
"""

from enum import Enum

# Daily limit stored for plans that never block consumption
UNLIMITED_DAILY_LIMIT = 999_999_999


class Plan(Enum):
    """Resolved subscription tier governing the daily limit of a ledger."""
    FREE = "free"
    STANDARD = "standard"
    PREMIUM = "premium"

    @property
    def is_unlimited(self) -> bool:
        """Premium ledgers participate in resets but never run out."""
        return self is Plan.PREMIUM


def parse_plan(value) -> Plan:
    """Normalize a plan name or Plan into a Plan.

    Args:
        value: Plan instance or case-insensitive plan name

    Returns:
        Matching Plan

    Raises:
        ValueError: If the value does not name a known plan
    """
    if isinstance(value, Plan):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Invalid plan: {value!r}")
    try:
        return Plan(value.strip().lower())
    except ValueError:
        valid_plans = [plan.value for plan in Plan]
        raise ValueError(f"Invalid plan {value!r}, must be one of: {valid_plans}")

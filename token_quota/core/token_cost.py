"""
Token cost derivation.

Maps output language and study mode to the opaque integer cost the
ledger consumes.
"""

from decimal import Decimal, ROUND_UP
from typing import Optional

from token_quota.config.loader import TokenCostConfig, default_quota_config


def calculate_token_cost(
    language: str = "en",
    study_mode: str = "standard",
    costs: Optional[TokenCostConfig] = None
) -> int:
    """Calculate the token cost for generating content.

    Non-English languages carry a higher base cost. The study mode
    multiplier scales it and the result is rounded UP so a fractional
    cost is never undercharged.

    Args:
        language: Output language code, unknown codes use the default cost
        study_mode: Study mode name
        costs: Cost table, defaults to the built-in table

    Returns:
        Whole number of tokens to consume

    Raises:
        ValueError: If the study mode is not configured
    """
    costs = costs or default_quota_config().token_costs

    base = costs.languages.get((language or "").strip().lower(), costs.default_cost)

    mode = (study_mode or "").strip().lower()
    if mode not in costs.study_modes:
        raise ValueError(f"Unsupported study mode: {study_mode}")

    multiplier = Decimal(str(costs.study_modes[mode]))
    cost = (Decimal(base) * multiplier).quantize(Decimal("1"), rounding=ROUND_UP)
    return int(cost)

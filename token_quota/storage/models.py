"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional

from token_quota.core.plans import UNLIMITED_DAILY_LIMIT

TOKEN_CONSUMED = "token_consumed"
TOKEN_ADDED = "token_added"
EVENT_TYPES = (TOKEN_CONSUMED, TOKEN_ADDED)


@dataclass(frozen=True)
class TokenLedger:
    """Snapshot of one (identifier, plan) ledger row.

    Balances are never negative; purchased tokens never expire and are
    never touched by the daily reset.
    """
    identifier: str
    plan: str
    available_tokens: int
    purchased_tokens: int
    daily_limit: int
    last_reset: date
    total_consumed_today: int

    def __post_init__(self):
        """Validate balances are non-negative."""
        if self.available_tokens < 0:
            raise ValueError("available_tokens cannot be negative")
        if self.purchased_tokens < 0:
            raise ValueError("purchased_tokens cannot be negative")
        if self.total_consumed_today < 0:
            raise ValueError("total_consumed_today cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Daily plus purchased balance."""
        return self.available_tokens + self.purchased_tokens

    @property
    def is_unlimited(self) -> bool:
        return self.daily_limit >= UNLIMITED_DAILY_LIMIT


@dataclass(frozen=True)
class EventRecord:
    """Immutable analytics record of a consumption or top-up.

    Write-once; the ledger never reads these back.
    """
    identifier: str
    event_type: str
    payload: Dict[str, Any]
    created_at: datetime
    id: Optional[int] = None

    def __post_init__(self):
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.event_type}")


@dataclass(frozen=True)
class UserProfile:
    """Profile fields the tier resolver reads."""
    user_id: str
    is_anonymous: bool = False
    is_admin: bool = False
    plan_preference: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionRecord:
    """Read-only snapshot of a paid subscription."""
    user_id: str
    subscription_plan: str
    status: str
    updated_at: datetime
    current_period_end: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def normalized_status(self) -> str:
        """Status lowercased with hyphens folded to underscores."""
        return (self.status or "").strip().lower().replace("-", "_")

    @property
    def normalized_plan(self) -> str:
        return (self.subscription_plan or "").strip().lower()

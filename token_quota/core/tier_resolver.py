"""
Subscription tier resolution.

Decides which plan's daily allowance applies to a user. Sources are
evaluated in a fixed order of precedence and the first match wins:

1. No user record, or anonymous user -> free
2. Admin override -> premium
3. Active premium subscription -> premium
4. Standard (or unbacked premium) preference:
   trial window, active standard subscription, cancellation grace
   period, otherwise free
5. No preference -> standard

Every branch has a fallback reachable from "no data found", and missing
or unreadable data always lands on the most restrictive tier.
"""

import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from token_quota.config.loader import TrialWindowConfig
from token_quota.storage.accounts import AccountDirectory
from token_quota.storage.models import SubscriptionRecord, UserProfile

from .plans import Plan

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "authenticated", "pending_cancellation"})
CANCELLED_STATUSES = frozenset({"cancelled", "canceled"})


@dataclass(frozen=True)
class TrialStatus:
    """Where "now" sits relative to the global trial window."""
    is_trial_active: bool
    is_in_grace_period: bool
    days_until_trial_end: int
    grace_days_remaining: int


def _as_utc(moment: datetime) -> datetime:
    """Treat naive timestamps as UTC so comparisons never raise."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _has_subscription(
    subscriptions: Iterable[SubscriptionRecord],
    plan: Plan,
    statuses: frozenset
) -> bool:
    return any(
        sub.normalized_plan == plan.value and sub.normalized_status in statuses
        for sub in subscriptions
    )


def _in_cancellation_grace(
    subscriptions: Iterable[SubscriptionRecord],
    trial: TrialWindowConfig,
    now: datetime
) -> bool:
    """A cancelled standard subscription updated within the grace period."""
    cutoff = now - timedelta(days=trial.grace_period_days)
    for sub in subscriptions:
        if sub.normalized_plan != Plan.STANDARD.value:
            continue
        if sub.normalized_status not in CANCELLED_STATUSES:
            continue
        if sub.updated_at is not None and _as_utc(sub.updated_at) >= cutoff:
            return True
    return False


def _standard_access(
    subscriptions: Iterable[SubscriptionRecord],
    trial: TrialWindowConfig,
    now: datetime
) -> Plan:
    if now < _as_utc(trial.trial_end):
        return Plan.STANDARD
    if _has_subscription(subscriptions, Plan.STANDARD, ACTIVE_STATUSES):
        return Plan.STANDARD
    if _in_cancellation_grace(subscriptions, trial, now):
        return Plan.STANDARD
    return Plan.FREE


def decide_tier(
    profile: Optional[UserProfile],
    subscriptions: Iterable[SubscriptionRecord],
    trial: TrialWindowConfig,
    now: datetime
) -> Plan:
    """Decide the effective tier from immutable snapshots.

    Side-effect free; the same inputs always give the same tier.

    Args:
        profile: The user's profile, None if there is no user record
        subscriptions: Every subscription record for the user
        trial: Global trial window configuration
        now: Decision time

    Returns:
        The effective Plan
    """
    now = _as_utc(now)
    subscriptions = list(subscriptions)

    if profile is None or profile.is_anonymous:
        return Plan.FREE

    if profile.is_admin:
        return Plan.PREMIUM

    if _has_subscription(subscriptions, Plan.PREMIUM, ACTIVE_STATUSES):
        return Plan.PREMIUM

    preference = (profile.plan_preference or "").strip().lower()
    if not preference:
        return Plan.STANDARD

    # A premium preference without a premium subscription gets standard treatment
    if preference in (Plan.STANDARD.value, Plan.PREMIUM.value):
        return _standard_access(subscriptions, trial, now)

    return Plan.FREE


def resolve_tier(
    user_id: str,
    directory: AccountDirectory,
    trial: TrialWindowConfig,
    now: Optional[datetime] = None
) -> Plan:
    """Resolve a user's effective tier, fresh on every call.

    Never raises: unreadable account data resolves to free.

    Args:
        user_id: User to resolve
        directory: Source of profile and subscription snapshots
        trial: Global trial window configuration
        now: Decision time, defaults to the current UTC time

    Returns:
        The effective Plan
    """
    now = now or _utc_now()
    if not user_id or not user_id.strip():
        return Plan.FREE

    try:
        profile = directory.get_profile(user_id)
        subscriptions = directory.get_subscriptions(user_id) if profile else []
    except (sqlite3.Error, ValueError) as e:
        logger.warning(f"Falling back to free tier for {user_id}: {e}")
        return Plan.FREE

    tier = decide_tier(profile, subscriptions, trial, now)
    logger.debug(f"Resolved tier for {user_id}: {tier.value}")
    return tier


class TierResolver:
    """Tier resolver bound to an account directory, trial window and clock."""

    def __init__(
        self,
        directory: AccountDirectory,
        trial: TrialWindowConfig,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.directory = directory
        self.trial = trial
        self.clock = clock or _utc_now

    def resolve(self, user_id: str) -> Plan:
        """Resolve the effective tier for a user at the clock's current time."""
        return resolve_tier(user_id, self.directory, self.trial, now=self.clock())

    def trial_status(self) -> TrialStatus:
        return trial_status(self.trial, self.clock())


def trial_status(trial: TrialWindowConfig, now: Optional[datetime] = None) -> TrialStatus:
    """Summarize the trial and post-trial grace windows at a point in time.

    The grace window runs from trial end to trial end plus
    grace_period_days, inclusive.
    """
    now = _as_utc(now or _utc_now())
    trial_end = _as_utc(trial.trial_end)
    grace_end = _as_utc(trial.grace_period_end)

    is_trial_active = now < trial_end
    is_in_grace_period = trial_end <= now <= grace_end

    days_until_trial_end = max((trial_end - now).days, 0) if is_trial_active else 0

    if is_trial_active:
        grace_days_remaining = trial.grace_period_days
    elif now > grace_end:
        grace_days_remaining = 0
    else:
        grace_days_remaining = math.ceil((grace_end - now).total_seconds() / 86400)

    return TrialStatus(
        is_trial_active=is_trial_active,
        is_in_grace_period=is_in_grace_period,
        days_until_trial_end=days_until_trial_end,
        grace_days_remaining=grace_days_remaining
    )

"""
Token ledger and consumption engine.

One ledger row exists per (identifier, plan). It holds the refreshing
daily balance and the non-expiring purchased balance.

Consumption Order:
1. Daily balance - Spent first, refills at UTC midnight
2. Purchased balance - Spent only once the daily balance is exhausted

Daily Reset:
The refill is lazy. Any read or write that finds last_reset before the
current UTC date persists the refill first: available tokens go back to
the plan's daily limit and the day's counter to zero. Purchased tokens
are never reset.

Business failures come back as structured results, never as exceptions,
so a caller can always show a clean "insufficient tokens" message.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from token_quota.config.loader import QuotaConfig, default_quota_config
from token_quota.storage.db import (
    DEFAULT_DB_PATH,
    DEFAULT_LOCK_TIMEOUT,
    get_connection,
    is_lock_error,
    write_transaction
)
from token_quota.storage.models import TOKEN_ADDED, TOKEN_CONSUMED, EventRecord, TokenLedger
from token_quota.storage.repository import (
    DEFAULT_HISTORY_LIMIT,
    apply_daily_reset,
    ensure_ledger,
    fetch_events,
    fetch_ledger,
    increment_purchased,
    record_event,
    update_balances
)

from .plans import Plan, parse_plan

logger = logging.getLogger(__name__)


class FailureReason(Enum):
    """Why a ledger mutation did not happen."""
    INSUFFICIENT_TOKENS = "insufficient tokens"
    INVALID_COST = "invalid token cost"
    INVALID_AMOUNT = "invalid token amount"
    PURCHASE_NOT_ALLOWED = "purchase not allowed for plan"
    LOCK_TIMEOUT = "lock timeout"


class QuotaError(Exception):
    """Base error for callers that prefer raising over result checking."""
    def __init__(self, message: str, reason: FailureReason):
        super().__init__(message)
        self.reason = reason


class InsufficientTokens(QuotaError):
    """Recoverable, user-facing: prompt for a purchase or upgrade."""


class InvalidAmount(QuotaError):
    """Caller programming error: non-positive cost or top-up amount."""


class PurchaseNotAllowed(QuotaError):
    """The ledger's plan does not accept purchased tokens."""


class LockTimeout(QuotaError):
    """Transient contention on the ledger; retry with backoff."""


_ERRORS = {
    FailureReason.INSUFFICIENT_TOKENS: InsufficientTokens,
    FailureReason.INVALID_COST: InvalidAmount,
    FailureReason.INVALID_AMOUNT: InvalidAmount,
    FailureReason.PURCHASE_NOT_ALLOWED: PurchaseNotAllowed,
    FailureReason.LOCK_TIMEOUT: LockTimeout,
}


def _raise_for(reason: Optional[FailureReason]) -> None:
    if reason is not None:
        raise _ERRORS[reason](reason.value, reason)


@dataclass(frozen=True)
class UsageContext:
    """Optional analytics context copied into the event payload."""
    feature_name: Optional[str] = None
    operation_type: Optional[str] = None
    language: Optional[str] = None
    study_mode: Optional[str] = None
    content_title: Optional[str] = None
    session_id: Optional[str] = None

    def to_payload(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True)
class ConsumptionResult:
    """Outcome of a consumption request with its per-source breakdown."""
    success: bool
    daily_used: int = 0
    purchased_used: int = 0
    remaining_daily: int = 0
    remaining_purchased: int = 0
    daily_limit: int = 0
    reason: Optional[FailureReason] = None
    event_id: Optional[int] = None

    @property
    def tokens_used(self) -> int:
        return self.daily_used + self.purchased_used

    @property
    def retryable(self) -> bool:
        return self.reason is FailureReason.LOCK_TIMEOUT

    def raise_for_failure(self) -> None:
        """Raise the matching QuotaError if the consumption failed."""
        _raise_for(self.reason)


@dataclass(frozen=True)
class TopUpResult:
    """Outcome of adding purchased tokens."""
    success: bool
    new_purchased_balance: int = 0
    reason: Optional[FailureReason] = None
    event_id: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.reason is FailureReason.LOCK_TIMEOUT

    def raise_for_failure(self) -> None:
        """Raise the matching QuotaError if the top-up failed."""
        _raise_for(self.reason)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_identifier(identifier: str) -> str:
    if not isinstance(identifier, str) or not identifier.strip():
        raise ValueError("identifier is required and cannot be empty")
    return identifier


class TokenLedgerService:
    """Trusted service-layer owner of the token ledger.

    Only this class writes ledger rows. It adjusts balances of principals
    other than its caller, so it is meant for internal callers
    (content generation, payment completion) and never exposed to end
    users directly.

    Each public call is one short transaction on its own connection.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        config: Optional[QuotaConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    ):
        """Initialize the ledger service.

        Args:
            db_path: Path to SQLite database file
            config: Quota configuration, defaults to the built-in plans
            clock: Callable returning the current time, defaults to UTC now
            lock_timeout: Seconds to wait for the ledger write lock
        """
        self.db_path = db_path
        self.config = config or default_quota_config()
        self.clock = clock or _utc_now
        self.lock_timeout = lock_timeout

    def _now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    @staticmethod
    def _today(now: datetime) -> date:
        # One global day boundary: UTC midnight for every user
        return now.date()

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, timeout=self.lock_timeout)

    def _prepare(self, conn: sqlite3.Connection, identifier: str, plan: Plan, now: datetime) -> TokenLedger:
        """Read the row, writing only when it is missing or a reset is due."""
        daily_limit = self.config.daily_limit_for(plan)
        today = self._today(now)

        ledger = fetch_ledger(conn, identifier, plan.value)
        if ledger is not None and ledger.last_reset >= today and ledger.daily_limit == daily_limit:
            return ledger

        if ledger is None and ensure_ledger(conn, identifier, plan.value, daily_limit, today, now):
            logger.info(f"Created {plan.value} ledger for {identifier} with {daily_limit} tokens")
        elif apply_daily_reset(conn, identifier, plan.value, daily_limit, today, now):
            logger.info(f"Applied daily reset for {identifier} ({plan.value})")

        return fetch_ledger(conn, identifier, plan.value)

    def get_or_create(self, identifier: str, plan) -> TokenLedger:
        """Get the ledger for (identifier, plan), creating or refilling it.

        Takes no write lock. A same-day read of an existing row is a plain
        SELECT. Creation and the daily refill are single conditional
        statements that apply at most once, so a concurrent consumer can
        never revert them. Status readers may see a slightly stale balance.

        Args:
            identifier: User id, or session id for anonymous users
            plan: Plan or plan name the ledger belongs to

        Returns:
            Current ledger snapshot

        Raises:
            LockTimeout: If the row had to be created or refilled and a
                writer held the database past the lock timeout
        """
        identifier = _validate_identifier(identifier)
        plan = parse_plan(plan)

        conn = self._connect()
        try:
            return self._prepare(conn, identifier, plan, self._now())
        except sqlite3.OperationalError as e:
            if not is_lock_error(e):
                raise
            logger.warning(f"Lock timeout reading ledger for {identifier}: {e}")
            _raise_for(FailureReason.LOCK_TIMEOUT)
        finally:
            conn.close()

    def consume(
        self,
        identifier: str,
        plan,
        cost: int,
        context: Optional[UsageContext] = None
    ) -> ConsumptionResult:
        """Atomically consume tokens, daily balance first.

        The write lock is held across read, compute and write, so two
        concurrent requests can never both spend the same balance.

        Args:
            identifier: User id, or session id for anonymous users
            plan: Resolved plan for the request
            cost: Tokens to consume, as computed by the caller
            context: Optional analytics context for the event

        Returns:
            ConsumptionResult with the per-source breakdown, or a failure
            reason with balances untouched
        """
        identifier = _validate_identifier(identifier)
        plan = parse_plan(plan)

        if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
            return ConsumptionResult(success=False, reason=FailureReason.INVALID_COST)

        now = self._now()
        conn = self._connect()
        try:
            with write_transaction(conn):
                ledger = self._prepare(conn, identifier, plan, now)
                result = self._consume_locked(conn, ledger, plan, cost, now)
        except sqlite3.OperationalError as e:
            if not is_lock_error(e):
                raise
            logger.warning(f"Lock timeout consuming {cost} tokens for {identifier}: {e}")
            return ConsumptionResult(success=False, reason=FailureReason.LOCK_TIMEOUT)
        finally:
            conn.close()

        if not result.success or cost == 0:
            return result

        event_id = self._record(identifier, TOKEN_CONSUMED, {
            "plan": plan.value,
            "cost": cost,
            "daily_used": result.daily_used,
            "purchased_used": result.purchased_used,
            "remaining_daily": result.remaining_daily,
            "remaining_purchased": result.remaining_purchased,
        }, context, now)
        return ConsumptionResult(
            success=True,
            daily_used=result.daily_used,
            purchased_used=result.purchased_used,
            remaining_daily=result.remaining_daily,
            remaining_purchased=result.remaining_purchased,
            daily_limit=result.daily_limit,
            event_id=event_id
        )

    def _consume_locked(
        self,
        conn: sqlite3.Connection,
        ledger: TokenLedger,
        plan: Plan,
        cost: int,
        now: datetime
    ) -> ConsumptionResult:
        """Compute and persist the consumption. Caller holds the write lock."""
        if cost == 0:
            return ConsumptionResult(
                success=True,
                remaining_daily=ledger.available_tokens,
                remaining_purchased=ledger.purchased_tokens,
                daily_limit=ledger.daily_limit
            )

        if plan.is_unlimited:
            # Counter only, for diagnostics; balances stay at the sentinel
            update_balances(
                conn, ledger.identifier, plan.value,
                ledger.available_tokens, ledger.purchased_tokens,
                ledger.total_consumed_today + cost, now
            )
            logger.debug(f"Premium consumption of {cost} tokens for {ledger.identifier}")
            return ConsumptionResult(
                success=True,
                remaining_daily=ledger.available_tokens,
                remaining_purchased=ledger.purchased_tokens,
                daily_limit=ledger.daily_limit
            )

        if ledger.total_tokens < cost:
            logger.debug(
                f"Insufficient tokens for {ledger.identifier}: "
                f"requested {cost}, available {ledger.total_tokens}"
            )
            return ConsumptionResult(
                success=False,
                remaining_daily=ledger.available_tokens,
                remaining_purchased=ledger.purchased_tokens,
                daily_limit=ledger.daily_limit,
                reason=FailureReason.INSUFFICIENT_TOKENS
            )

        daily_used = min(ledger.available_tokens, cost)
        purchased_used = cost - daily_used

        remaining_daily = ledger.available_tokens - daily_used
        remaining_purchased = ledger.purchased_tokens - purchased_used

        update_balances(
            conn, ledger.identifier, plan.value,
            remaining_daily, remaining_purchased,
            ledger.total_consumed_today + cost, now
        )
        logger.debug(
            f"Consumed {cost} tokens for {ledger.identifier} "
            f"(daily={daily_used}, purchased={purchased_used})"
        )

        return ConsumptionResult(
            success=True,
            daily_used=daily_used,
            purchased_used=purchased_used,
            remaining_daily=remaining_daily,
            remaining_purchased=remaining_purchased,
            daily_limit=ledger.daily_limit
        )

    def add_purchased(
        self,
        identifier: str,
        plan,
        amount: int,
        context: Optional[UsageContext] = None
    ) -> TopUpResult:
        """Add purchased tokens to the ledger.

        Always additive. There is no deduplication key here: the payment
        collaborator must call this exactly once per completed purchase.

        Args:
            identifier: User id the purchase belongs to
            plan: Plan of the ledger to top up
            amount: Tokens purchased, must be a positive integer
            context: Optional analytics context for the event

        Returns:
            TopUpResult with the new purchased balance, or a failure reason
        """
        identifier = _validate_identifier(identifier)
        plan = parse_plan(plan)

        max_amount = self.config.purchase.max_amount
        if (isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0
                or (max_amount is not None and amount > max_amount)):
            return TopUpResult(success=False, reason=FailureReason.INVALID_AMOUNT)

        if not self.config.can_purchase(plan):
            logger.debug(f"Rejected top-up of {amount} tokens for {identifier}: {plan.value} cannot purchase")
            return TopUpResult(success=False, reason=FailureReason.PURCHASE_NOT_ALLOWED)

        now = self._now()
        conn = self._connect()
        try:
            with write_transaction(conn):
                ledger = self._prepare(conn, identifier, plan, now)
                new_balance = increment_purchased(conn, identifier, plan.value, amount, now)
        except sqlite3.OperationalError as e:
            if not is_lock_error(e):
                raise
            logger.warning(f"Lock timeout adding {amount} purchased tokens for {identifier}: {e}")
            return TopUpResult(success=False, reason=FailureReason.LOCK_TIMEOUT)
        finally:
            conn.close()

        logger.info(f"Added {amount} purchased tokens for {identifier} ({plan.value}), balance {new_balance}")

        event_id = self._record(identifier, TOKEN_ADDED, {
            "plan": plan.value,
            "amount": amount,
            "source": "purchase",
            "remaining_daily": ledger.available_tokens,
            "remaining_purchased": new_balance,
        }, context, now)
        return TopUpResult(success=True, new_purchased_balance=new_balance, event_id=event_id)

    def _record(
        self,
        identifier: str,
        event_type: str,
        payload: dict,
        context: Optional[UsageContext],
        now: datetime
    ) -> Optional[int]:
        """Best-effort event append after the ledger commit.

        A recorder failure degrades observability only; the committed
        mutation stands and the result carries no event id.
        """
        if context is not None:
            payload = {**payload, "context": context.to_payload()}
        try:
            return record_event(identifier, event_type, payload, created_at=now, db_path=self.db_path)
        except sqlite3.Error as e:
            logger.warning(f"Failed to record {event_type} event for {identifier}: {e}")
            return None

    def usage_history(
        self,
        identifier: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[str] = None
    ) -> List[EventRecord]:
        """Page through an identifier's events, newest first."""
        identifier = _validate_identifier(identifier)
        return fetch_events(
            identifier=identifier,
            event_type=event_type,
            limit=limit,
            offset=offset,
            start=start,
            end=end,
            db_path=self.db_path
        )

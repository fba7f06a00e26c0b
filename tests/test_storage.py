"""
Unit tests for storage layer.

Tests schema creation, ledger row SQL, the event log and account records.
"""

import os
import sqlite3
import tempfile
from datetime import date, datetime, timedelta, timezone

import pytest

from token_quota.storage.accounts import (
    AccountDirectory,
    delete_subscriptions,
    insert_subscription,
    save_user_profile
)
from token_quota.storage.db import get_connection, is_lock_error, write_transaction
from token_quota.storage.models import (
    TOKEN_ADDED,
    TOKEN_CONSUMED,
    EventRecord,
    SubscriptionRecord,
    TokenLedger,
    UserProfile
)
from token_quota.storage.repository import (
    apply_daily_reset,
    ensure_ledger,
    fetch_events,
    fetch_ledger,
    increment_purchased,
    initialize_schema,
    insert_event,
    record_event,
    update_balances
)

NOW = datetime(2024, 1, 2, 12, 0, 0, tzinfo=timezone.utc)
TODAY = NOW.date()
YESTERDAY = TODAY - timedelta(days=1)


class StorageTestBase:
    """Temporary database per test."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestStorageSchema(StorageTestBase):
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
            assert {"token_ledger", "token_event", "user_profile", "subscription"} <= tables

            cursor = conn.execute("PRAGMA table_info(token_ledger)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert column_names == [
                'id', 'identifier', 'plan', 'available_tokens', 'purchased_tokens',
                'daily_limit', 'last_reset', 'total_consumed_today',
                'created_at', 'updated_at'
            ]
        finally:
            conn.close()

    def test_schema_creation_is_idempotent(self):
        initialize_schema(self.db_path)
        initialize_schema(self.db_path)

    def test_negative_balance_rejected_by_database(self):
        conn = get_connection(self.db_path)
        try:
            ensure_ledger(conn, "user-1", "free", 20, TODAY, NOW)
            with pytest.raises(sqlite3.IntegrityError):
                update_balances(conn, "user-1", "free", -1, 0, 0, NOW)
        finally:
            conn.close()

    def test_unknown_plan_rejected_by_database(self):
        conn = get_connection(self.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                ensure_ledger(conn, "user-1", "gold", 20, TODAY, NOW)
        finally:
            conn.close()


class TestLedgerRows(StorageTestBase):
    """Test ledger row operations."""

    def setup_method(self):
        super().setup_method()
        self.conn = get_connection(self.db_path)

    def teardown_method(self):
        self.conn.close()
        super().teardown_method()

    def test_ensure_ledger_creates_once(self):
        assert ensure_ledger(self.conn, "user-1", "free", 20, TODAY, NOW) is True
        assert ensure_ledger(self.conn, "user-1", "free", 20, TODAY, NOW) is False

        ledger = fetch_ledger(self.conn, "user-1", "free")
        assert ledger == TokenLedger(
            identifier="user-1",
            plan="free",
            available_tokens=20,
            purchased_tokens=0,
            daily_limit=20,
            last_reset=TODAY,
            total_consumed_today=0
        )

    def test_same_identifier_different_plans_are_separate(self):
        ensure_ledger(self.conn, "user-1", "free", 20, TODAY, NOW)
        ensure_ledger(self.conn, "user-1", "standard", 100, TODAY, NOW)

        assert fetch_ledger(self.conn, "user-1", "free").daily_limit == 20
        assert fetch_ledger(self.conn, "user-1", "standard").daily_limit == 100

    def test_fetch_missing_ledger(self):
        assert fetch_ledger(self.conn, "nobody", "free") is None

    def test_reset_applies_once_per_day(self):
        ensure_ledger(self.conn, "user-1", "free", 20, YESTERDAY, NOW)
        update_balances(self.conn, "user-1", "free", 3, 40, 17, NOW)

        assert apply_daily_reset(self.conn, "user-1", "free", 20, TODAY, NOW) is True
        assert apply_daily_reset(self.conn, "user-1", "free", 20, TODAY, NOW) is False

        ledger = fetch_ledger(self.conn, "user-1", "free")
        assert ledger.available_tokens == 20
        assert ledger.purchased_tokens == 40
        assert ledger.total_consumed_today == 0
        assert ledger.last_reset == TODAY

    def test_reset_never_moves_last_reset_backwards(self):
        ensure_ledger(self.conn, "user-1", "free", 20, TODAY, NOW)

        assert apply_daily_reset(self.conn, "user-1", "free", 20, YESTERDAY, NOW) is False
        assert fetch_ledger(self.conn, "user-1", "free").last_reset == TODAY

    def test_lowered_limit_caps_daily_balance(self):
        ensure_ledger(self.conn, "user-1", "free", 20, TODAY, NOW)

        apply_daily_reset(self.conn, "user-1", "free", 8, TODAY, NOW)

        ledger = fetch_ledger(self.conn, "user-1", "free")
        assert ledger.daily_limit == 8
        assert ledger.available_tokens == 8

    def test_increment_purchased_returns_new_balance(self):
        ensure_ledger(self.conn, "user-1", "free", 20, TODAY, NOW)

        assert increment_purchased(self.conn, "user-1", "free", 50, NOW) == 50
        assert increment_purchased(self.conn, "user-1", "free", 25, NOW) == 75

    def test_write_transaction_rolls_back_on_error(self):
        ensure_ledger(self.conn, "user-1", "free", 20, TODAY, NOW)

        with pytest.raises(RuntimeError):
            with write_transaction(self.conn):
                update_balances(self.conn, "user-1", "free", 0, 0, 20, NOW)
                raise RuntimeError("abort")

        assert fetch_ledger(self.conn, "user-1", "free").available_tokens == 20

    def test_competing_writer_gets_lock_error(self):
        other = get_connection(self.db_path, timeout=0.05)
        try:
            with write_transaction(self.conn):
                with pytest.raises(sqlite3.OperationalError) as exc_info:
                    other.execute("BEGIN IMMEDIATE")
            assert is_lock_error(exc_info.value)
        finally:
            other.close()

    def test_other_operational_errors_are_not_lock_errors(self):
        assert not is_lock_error(sqlite3.OperationalError("no such table: token_ledger"))


class TestEventLog(StorageTestBase):
    """Test event insertion and retrieval."""

    def _event(self, identifier="user-1", event_type=TOKEN_CONSUMED, minutes=0, cost=10):
        return EventRecord(
            identifier=identifier,
            event_type=event_type,
            payload={"plan": "free", "cost": cost},
            created_at=NOW + timedelta(minutes=minutes)
        )

    def test_insert_and_fetch_event(self):
        event_id = insert_event(self._event(), self.db_path)

        events = fetch_events(identifier="user-1", db_path=self.db_path)

        assert len(events) == 1
        assert events[0].id == event_id
        assert events[0].event_type == TOKEN_CONSUMED
        assert events[0].payload == {"plan": "free", "cost": 10}
        assert events[0].created_at == NOW

    def test_events_newest_first(self):
        for minutes in (5, 1, 3):
            insert_event(self._event(minutes=minutes, cost=minutes), self.db_path)

        events = fetch_events(identifier="user-1", db_path=self.db_path)

        assert [e.payload["cost"] for e in events] == [5, 3, 1]

    def test_same_timestamp_ordered_by_insertion(self):
        first = insert_event(self._event(), self.db_path)
        second = insert_event(self._event(), self.db_path)

        events = fetch_events(identifier="user-1", db_path=self.db_path)

        assert [e.id for e in events] == [second, first]

    def test_filter_by_identifier_and_type(self):
        insert_event(self._event(identifier="user-1"), self.db_path)
        insert_event(self._event(identifier="user-2"), self.db_path)
        insert_event(self._event(identifier="user-1", event_type=TOKEN_ADDED), self.db_path)

        assert len(fetch_events(identifier="user-1", db_path=self.db_path)) == 2
        assert len(fetch_events(db_path=self.db_path)) == 3

        added = fetch_events(identifier="user-1", event_type=TOKEN_ADDED, db_path=self.db_path)
        assert [e.event_type for e in added] == [TOKEN_ADDED]

    def test_filter_by_time_window(self):
        for minutes in range(5):
            insert_event(self._event(minutes=minutes, cost=minutes), self.db_path)

        events = fetch_events(
            identifier="user-1",
            start=NOW + timedelta(minutes=1),
            end=NOW + timedelta(minutes=3),
            db_path=self.db_path
        )

        assert [e.payload["cost"] for e in events] == [3, 2, 1]

    def test_time_window_bounds_in_other_offsets(self):
        """Bounds are compared as instants, whatever their offset."""
        ist = timezone(timedelta(hours=5, minutes=30))
        for minutes in range(5):
            insert_event(self._event(minutes=minutes, cost=minutes), self.db_path)

        events = fetch_events(
            identifier="user-1",
            start=(NOW + timedelta(minutes=1)).astimezone(ist),
            end=(NOW + timedelta(minutes=3)).astimezone(ist),
            db_path=self.db_path
        )

        assert [e.payload["cost"] for e in events] == [3, 2, 1]

    def test_naive_bounds_are_utc(self):
        for minutes in range(3):
            insert_event(self._event(minutes=minutes, cost=minutes), self.db_path)

        events = fetch_events(
            identifier="user-1",
            start=(NOW + timedelta(minutes=1)).replace(tzinfo=None),
            db_path=self.db_path
        )

        assert [e.payload["cost"] for e in events] == [2, 1]

    def test_event_time_stored_in_utc(self):
        ist = timezone(timedelta(hours=5, minutes=30))
        insert_event(EventRecord(
            identifier="user-1",
            event_type=TOKEN_ADDED,
            payload={"amount": 5},
            created_at=NOW.astimezone(ist)
        ), self.db_path)

        events = fetch_events(identifier="user-1", db_path=self.db_path)

        assert events[0].created_at == NOW
        assert events[0].created_at.utcoffset() == timedelta(0)

    def test_paging_values_are_clamped(self):
        for minutes in range(150):
            insert_event(self._event(minutes=minutes, cost=minutes), self.db_path)

        assert len(fetch_events(identifier="user-1", limit=500, db_path=self.db_path)) == 100
        assert len(fetch_events(identifier="user-1", limit=0, db_path=self.db_path)) == 20
        assert len(fetch_events(identifier="user-1", limit=-3, db_path=self.db_path)) == 20

        negative_offset = fetch_events(identifier="user-1", limit=1, offset=-5, db_path=self.db_path)
        assert negative_offset[0].payload["cost"] == 149

        paged = fetch_events(identifier="user-1", limit=2, offset=2, db_path=self.db_path)
        assert [e.payload["cost"] for e in paged] == [147, 146]

    def test_unknown_event_type_filter_rejected(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            fetch_events(event_type="token_refunded", db_path=self.db_path)

    def test_unknown_event_type_record_rejected(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            self._event(event_type="token_refunded")

    def test_record_event_defaults_timestamp(self):
        event_id = record_event("user-1", TOKEN_ADDED, {"amount": 50}, db_path=self.db_path)

        events = fetch_events(identifier="user-1", db_path=self.db_path)
        assert events[0].id == event_id
        assert events[0].created_at.tzinfo is not None

    def test_empty_history(self):
        assert fetch_events(identifier="nobody", db_path=self.db_path) == []


class TestAccounts(StorageTestBase):
    """Test profile and subscription records."""

    def test_missing_profile(self):
        assert AccountDirectory(self.db_path).get_profile("nobody") is None

    def test_profile_upsert(self):
        save_user_profile(UserProfile(user_id="user-1", plan_preference="standard"), self.db_path)
        save_user_profile(UserProfile(user_id="user-1", is_admin=True), self.db_path)

        profile = AccountDirectory(self.db_path).get_profile("user-1")

        assert profile == UserProfile(user_id="user-1", is_admin=True, plan_preference=None)

    def test_subscriptions_most_recent_first(self):
        older = SubscriptionRecord("user-1", "standard", "cancelled", updated_at=NOW - timedelta(days=30))
        newer = SubscriptionRecord(
            "user-1", "premium", "active",
            updated_at=NOW,
            current_period_end=NOW + timedelta(days=30)
        )
        insert_subscription(older, self.db_path)
        insert_subscription(newer, self.db_path)

        subs = AccountDirectory(self.db_path).get_subscriptions("user-1")

        assert [s.subscription_plan for s in subs] == ["premium", "standard"]
        assert subs[0].current_period_end == NOW + timedelta(days=30)
        assert subs[1].current_period_end is None
        assert subs[1].updated_at == NOW - timedelta(days=30)

    def test_delete_subscriptions(self):
        insert_subscription(SubscriptionRecord("user-1", "standard", "active", updated_at=NOW), self.db_path)
        insert_subscription(SubscriptionRecord("user-1", "premium", "active", updated_at=NOW), self.db_path)
        insert_subscription(SubscriptionRecord("user-2", "standard", "active", updated_at=NOW), self.db_path)

        assert delete_subscriptions("user-1", self.db_path) == 2

        directory = AccountDirectory(self.db_path)
        assert directory.get_subscriptions("user-1") == []
        assert len(directory.get_subscriptions("user-2")) == 1

    def test_subscription_normalization(self):
        record = SubscriptionRecord("user-1", " Premium ", "Pending-Cancellation", updated_at=NOW)

        assert record.normalized_plan == "premium"
        assert record.normalized_status == "pending_cancellation"


class TestModels:
    """Test model validation."""

    def test_ledger_rejects_negative_balances(self):
        with pytest.raises(ValueError, match="purchased_tokens cannot be negative"):
            TokenLedger("user-1", "free", 0, -1, 20, date(2024, 1, 1), 0)

    def test_ledger_totals(self):
        ledger = TokenLedger("user-1", "free", 7, 30, 20, date(2024, 1, 1), 13)

        assert ledger.total_tokens == 37
        assert not ledger.is_unlimited

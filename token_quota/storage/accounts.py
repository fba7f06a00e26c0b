"""
Account directory.

Read-only access to the user profiles and subscription records the tier
resolver decides on. The writers exist for seeding and tests. The ledger
and resolver never mutate account state.
"""

from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import SubscriptionRecord, UserProfile


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


class AccountDirectory:
    """Snapshot reader for profiles and subscriptions."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        """Get the profile for a user, or None if there is no user record."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT user_id, is_anonymous, is_admin, plan_preference
                FROM user_profile WHERE user_id = ?
                """,
                (user_id,)
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return UserProfile(
                user_id=row[0],
                is_anonymous=bool(row[1]),
                is_admin=bool(row[2]),
                plan_preference=row[3]
            )
        finally:
            conn.close()

    def get_subscriptions(self, user_id: str) -> List[SubscriptionRecord]:
        """Get every subscription record for a user, most recently updated first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT id, user_id, subscription_plan, status, current_period_end, updated_at
                FROM subscription WHERE user_id = ?
                ORDER BY updated_at DESC, id DESC
                """,
                (user_id,)
            )
            return [
                SubscriptionRecord(
                    id=row[0],
                    user_id=row[1],
                    subscription_plan=row[2],
                    status=row[3],
                    current_period_end=_parse_timestamp(row[4]),
                    updated_at=_parse_timestamp(row[5])
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


def save_user_profile(profile: UserProfile, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert or replace a user profile."""
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO user_profile (user_id, is_anonymous, is_admin, plan_preference)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                is_anonymous = excluded.is_anonymous,
                is_admin = excluded.is_admin,
                plan_preference = excluded.plan_preference
            """,
            (profile.user_id, int(profile.is_anonymous), int(profile.is_admin), profile.plan_preference)
        )
    finally:
        conn.close()


def insert_subscription(record: SubscriptionRecord, db_path: str = DEFAULT_DB_PATH) -> int:
    """Insert a subscription record and return its row id."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """
            INSERT INTO subscription (user_id, subscription_plan, status, current_period_end, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                record.user_id,
                record.subscription_plan,
                record.status,
                record.current_period_end.isoformat() if record.current_period_end else None,
                record.updated_at.isoformat()
            )
        )
        return cursor.lastrowid
    finally:
        conn.close()


def delete_subscriptions(user_id: str, db_path: str = DEFAULT_DB_PATH) -> int:
    """Remove every subscription record for a user and return how many went."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("DELETE FROM subscription WHERE user_id = ?", (user_id,))
        return cursor.rowcount
    finally:
        conn.close()

# token_quota/demo/seed_demo_data.py

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from token_quota.storage.accounts import delete_subscriptions, insert_subscription, save_user_profile
from token_quota.storage.db import DEFAULT_DB_PATH
from token_quota.storage.models import SubscriptionRecord, UserProfile
from token_quota.storage.repository import initialize_schema


def seed_demo_data(db_path: str = DEFAULT_DB_PATH, now: Optional[datetime] = None) -> List[str]:
    """Create one demo account per tier resolution path and return their ids."""
    now = now or datetime.now(timezone.utc)
    initialize_schema(db_path)

    profiles = [
        UserProfile(user_id="demo-anonymous", is_anonymous=True),
        UserProfile(user_id="demo-admin", is_admin=True),
        UserProfile(user_id="demo-premium", plan_preference="premium"),
        UserProfile(user_id="demo-standard", plan_preference="standard"),
        UserProfile(user_id="demo-grace", plan_preference="standard"),
        UserProfile(user_id="demo-free", plan_preference="free"),
        UserProfile(user_id="demo-default"),
    ]
    # Re-seeding replaces the demo subscriptions rather than stacking them
    for profile in profiles:
        save_user_profile(profile, db_path)
        delete_subscriptions(profile.user_id, db_path)

    insert_subscription(SubscriptionRecord(
        user_id="demo-premium",
        subscription_plan="premium",
        status="active",
        current_period_end=now + timedelta(days=30),
        updated_at=now
    ), db_path)
    insert_subscription(SubscriptionRecord(
        user_id="demo-standard",
        subscription_plan="standard",
        status="active",
        current_period_end=now + timedelta(days=30),
        updated_at=now
    ), db_path)
    insert_subscription(SubscriptionRecord(
        user_id="demo-grace",
        subscription_plan="standard",
        status="cancelled",
        current_period_end=now,
        updated_at=now - timedelta(days=2)
    ), db_path)

    return [profile.user_id for profile in profiles]


if __name__ == "__main__":
    seeded = seed_demo_data()
    print(f"Demo accounts inserted: {', '.join(seeded)}")

"""
Repository functions for data access.

Ledger row SQL runs on a caller-supplied connection so the ledger service
decides the transaction boundary. Event functions open their own
connection: the event log is a side channel written after the ledger
commits.
"""

import json
import sqlite3
from datetime import date, datetime, timezone
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import EVENT_TYPES, EventRecord, TokenLedger

MAX_HISTORY_LIMIT = 100
DEFAULT_HISTORY_LIMIT = 20

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS token_ledger (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        identifier TEXT NOT NULL,
        plan TEXT NOT NULL CHECK (plan IN ('free', 'standard', 'premium')),
        available_tokens INTEGER NOT NULL DEFAULT 0 CHECK (available_tokens >= 0),
        purchased_tokens INTEGER NOT NULL DEFAULT 0 CHECK (purchased_tokens >= 0),
        daily_limit INTEGER NOT NULL CHECK (daily_limit >= 0),
        last_reset TEXT NOT NULL,
        total_consumed_today INTEGER NOT NULL DEFAULT 0 CHECK (total_consumed_today >= 0),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (identifier, plan)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_token_ledger_last_reset ON token_ledger(last_reset)",
    """
    CREATE TABLE IF NOT EXISTS token_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        identifier TEXT NOT NULL,
        event_type TEXT NOT NULL CHECK (event_type IN ('token_consumed', 'token_added')),
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_token_event_identifier ON token_event(identifier, created_at)",
    """
    CREATE TABLE IF NOT EXISTS user_profile (
        user_id TEXT PRIMARY KEY,
        is_anonymous INTEGER NOT NULL DEFAULT 0,
        is_admin INTEGER NOT NULL DEFAULT 0,
        plan_preference TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscription (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        subscription_plan TEXT NOT NULL,
        status TEXT NOT NULL,
        current_period_end TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_subscription_user_id ON subscription(user_id)",
)

_LEDGER_COLUMNS = """
    identifier, plan, available_tokens, purchased_tokens,
    daily_limit, last_reset, total_consumed_today
"""


def _utc_iso(moment: datetime) -> str:
    """ISO text in UTC; event timestamps are compared as strings."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, event and account tables if they don't exist.

    The event table is an append-only log. No UPDATE or DELETE is ever
    issued against it, and ledger rows are never deleted.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in _SCHEMA:
            conn.execute(statement)
    finally:
        conn.close()


# ==================== LEDGER ROWS ====================

def _row_to_ledger(row) -> TokenLedger:
    return TokenLedger(
        identifier=row[0],
        plan=row[1],
        available_tokens=row[2],
        purchased_tokens=row[3],
        daily_limit=row[4],
        last_reset=date.fromisoformat(row[5]),
        total_consumed_today=row[6]
    )


def ensure_ledger(
    conn: sqlite3.Connection,
    identifier: str,
    plan: str,
    daily_limit: int,
    today: date,
    now: datetime,
    purchased_tokens: int = 0
) -> bool:
    """Create the ledger row with a full daily balance if it is missing.

    Returns:
        True if a row was created, False if one already existed
    """
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO token_ledger
        (identifier, plan, available_tokens, purchased_tokens, daily_limit,
         last_reset, total_consumed_today, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
        """,
        (identifier, plan, daily_limit, purchased_tokens, daily_limit,
         today.isoformat(), now.isoformat(), now.isoformat())
    )
    return cursor.rowcount == 1


def apply_daily_reset(
    conn: sqlite3.Connection,
    identifier: str,
    plan: str,
    daily_limit: int,
    today: date,
    now: datetime
) -> bool:
    """Persist the daily refill if the row was last reset before today.

    A single conditional UPDATE, so concurrent callers apply the refill at
    most once per day and last_reset can only move forward. The stored
    daily_limit is brought in line with the configured one as well.
    Purchased tokens are never touched. Needs the write lock; callers
    only issue it once a read showed a reset or re-sync is due.

    Returns:
        True if the refill was applied
    """
    today_iso = today.isoformat()
    cursor = conn.execute(
        """
        UPDATE token_ledger
        SET available_tokens = ?,
            total_consumed_today = 0,
            daily_limit = ?,
            last_reset = ?,
            updated_at = ?
        WHERE identifier = ? AND plan = ? AND last_reset < ?
        """,
        (daily_limit, daily_limit, today_iso, now.isoformat(),
         identifier, plan, today_iso)
    )
    if cursor.rowcount:
        return True

    conn.execute(
        """
        UPDATE token_ledger
        SET daily_limit = ?,
            available_tokens = MIN(available_tokens, ?),
            updated_at = ?
        WHERE identifier = ? AND plan = ? AND daily_limit != ?
        """,
        (daily_limit, daily_limit, now.isoformat(), identifier, plan, daily_limit)
    )
    return False


def fetch_ledger(conn: sqlite3.Connection, identifier: str, plan: str) -> Optional[TokenLedger]:
    """Read a ledger row, or None if it doesn't exist."""
    cursor = conn.execute(
        f"SELECT {_LEDGER_COLUMNS} FROM token_ledger WHERE identifier = ? AND plan = ?",
        (identifier, plan)
    )
    row = cursor.fetchone()
    return _row_to_ledger(row) if row else None


def update_balances(
    conn: sqlite3.Connection,
    identifier: str,
    plan: str,
    available_tokens: int,
    purchased_tokens: int,
    total_consumed_today: int,
    now: datetime
) -> None:
    """Write new balances computed under the write lock."""
    conn.execute(
        """
        UPDATE token_ledger
        SET available_tokens = ?,
            purchased_tokens = ?,
            total_consumed_today = ?,
            updated_at = ?
        WHERE identifier = ? AND plan = ?
        """,
        (available_tokens, purchased_tokens, total_consumed_today,
         now.isoformat(), identifier, plan)
    )


def increment_purchased(
    conn: sqlite3.Connection,
    identifier: str,
    plan: str,
    amount: int,
    now: datetime
) -> int:
    """Add to the purchased balance and return the new balance."""
    conn.execute(
        """
        UPDATE token_ledger
        SET purchased_tokens = purchased_tokens + ?,
            updated_at = ?
        WHERE identifier = ? AND plan = ?
        """,
        (amount, now.isoformat(), identifier, plan)
    )
    cursor = conn.execute(
        "SELECT purchased_tokens FROM token_ledger WHERE identifier = ? AND plan = ?",
        (identifier, plan)
    )
    return cursor.fetchone()[0]


# ==================== EVENT LOG ====================

def insert_event(event: EventRecord, db_path: str = DEFAULT_DB_PATH) -> int:
    """Append a single event to the event log.

    This operation is append-only - events cannot be modified after insertion.

    Args:
        event: The event to record
        db_path: Path to SQLite database file

    Returns:
        Row id of the new event
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """
            INSERT INTO token_event (identifier, event_type, payload, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (
                event.identifier,
                event.event_type,
                json.dumps(event.payload, sort_keys=True),
                _utc_iso(event.created_at)
            )
        )
        return cursor.lastrowid
    finally:
        conn.close()


def fetch_events(
    identifier: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = DEFAULT_HISTORY_LIMIT,
    offset: int = 0,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db_path: str = DEFAULT_DB_PATH
) -> List[EventRecord]:
    """Fetch events newest first, optionally filtered.

    Out-of-range paging values are clamped rather than rejected: limit
    to 1..100 (values below 1 fall back to the default page size) and
    offset to >= 0.

    Args:
        identifier: Optional filter for one ledger identifier
        event_type: Optional filter for token_consumed / token_added
        limit: Page size
        offset: Number of events to skip
        start: Only events created at or after this time (naive means UTC)
        end: Only events created at or before this time (naive means UTC)
        db_path: Path to SQLite database file

    Returns:
        List of events ordered by creation time (newest first)
    """
    if event_type is not None and event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")

    if limit < 1:
        limit = DEFAULT_HISTORY_LIMIT
    limit = min(limit, MAX_HISTORY_LIMIT)
    offset = max(offset, 0)

    conn = get_connection(db_path)
    try:
        query = "SELECT id, identifier, event_type, payload, created_at FROM token_event"
        params = []
        conditions = []

        if identifier:
            conditions.append("identifier = ?")
            params.append(identifier)
        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type)
        if start is not None:
            conditions.append("created_at >= ?")
            params.append(_utc_iso(start))
        if end is not None:
            conditions.append("created_at <= ?")
            params.append(_utc_iso(end))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        cursor = conn.execute(query, params)
        events = []
        for row in cursor.fetchall():
            events.append(EventRecord(
                id=row[0],
                identifier=row[1],
                event_type=row[2],
                payload=json.loads(row[3]),
                created_at=datetime.fromisoformat(row[4])
            ))
        return events
    finally:
        conn.close()


def record_event(
    identifier: str,
    event_type: str,
    payload: dict,
    created_at: Optional[datetime] = None,
    db_path: str = DEFAULT_DB_PATH
) -> int:
    """Append an analytics event and return its id.

    Args:
        identifier: Ledger identifier the event belongs to
        event_type: token_consumed or token_added
        payload: JSON-serializable event details
        created_at: Event time, defaults to the current UTC time
        db_path: Path to SQLite database file

    Returns:
        Row id of the new event
    """
    event = EventRecord(
        identifier=identifier,
        event_type=event_type,
        payload=payload,
        created_at=created_at or datetime.now(timezone.utc)
    )
    return insert_event(event, db_path)

"""
Database connection management.

Provides SQLite connections and the exclusive write transaction that
serializes ledger mutations.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "token_quota.db"
DEFAULT_LOCK_TIMEOUT = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_LOCK_TIMEOUT) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; multi-statement writes go
    through ``write_transaction`` which issues its own BEGIN.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before giving up

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Hold the exclusive write lock for a read-modify-write sequence.

    BEGIN IMMEDIATE takes the write lock before the first read, so two
    writers can never both read the same balance. A competing writer
    waits up to the connection timeout, then gets
    ``sqlite3.OperationalError: database is locked``.

    Commits on success and rolls back on any exception.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def is_lock_error(error: sqlite3.OperationalError) -> bool:
    """Whether an OperationalError came from lock contention."""
    message = str(error).lower()
    return "locked" in message or "busy" in message

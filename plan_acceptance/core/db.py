"""
SQLite persistence for verifications, votes and acceptance records.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from .config import DB_TIMEOUT_SEC, ensure_db_directory, get_db_path
from .errors import StoreUnavailableError

# Fixed-width UTC timestamps so that SQL string comparison is chronological
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC copy of a datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage. Naive values are taken as UTC."""
    if value is None:
        return None
    return as_utc(value).strftime(TIMESTAMP_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def is_lock_error(error: sqlite3.OperationalError) -> bool:
    """True when SQLite gave up waiting for another writer."""
    message = str(error).lower()
    return "locked" in message or "busy" in message


@contextmanager
def get_db(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite connection in autocommit mode; transactions are opened explicitly."""
    path = db_path or get_db_path()
    try:
        ensure_db_directory(path)
        conn = sqlite3.connect(path, timeout=DB_TIMEOUT_SEC, isolation_level=None)
    except (sqlite3.OperationalError, OSError) as e:
        raise StoreUnavailableError(f"Cannot open database {path}: {e}") from e

    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        yield conn
    finally:
        conn.close()


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """Run a block under SQLite's writer lock. Commits on success, rolls back on any error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def init_db(db_path: Optional[str] = None):
    """Initialize the database with required tables."""
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # One row per user-submitted claim; content columns never change
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS verifications (
                id TEXT PRIMARY KEY,
                provider_key TEXT NOT NULL,
                plan_key TEXT NOT NULL,
                location_key TEXT NOT NULL DEFAULT '',
                accepts_insurance INTEGER NOT NULL,
                accepts_new_patients INTEGER,
                phone_reached INTEGER,
                phone_correct INTEGER,
                scheduled_appointment INTEGER,
                note TEXT,
                evidence_url TEXT,
                submitted_by TEXT,
                origin_fingerprint TEXT NOT NULL,
                data_source TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                upvotes INTEGER NOT NULL DEFAULT 0,
                downvotes INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'active'
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS votes (
                verification_id TEXT NOT NULL REFERENCES verifications(id),
                voter_fingerprint TEXT NOT NULL,
                direction TEXT NOT NULL CHECK (direction IN ('up', 'down')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (verification_id, voter_fingerprint)
            )
        ''')

        # Denormalized answer per key; only the consensus engine writes here
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS acceptance (
                provider_key TEXT NOT NULL,
                plan_key TEXT NOT NULL,
                location_key TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                confidence_score INTEGER NOT NULL DEFAULT 0,
                last_verified_at TEXT,
                verification_count INTEGER NOT NULL DEFAULT 0,
                expires_at TEXT,
                updated_at TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                PRIMARY KEY (provider_key, plan_key, location_key)
            )
        ''')

        cursor.execute(
            'CREATE INDEX IF NOT EXISTS idx_verifications_key_status '
            'ON verifications(provider_key, plan_key, location_key, status)'
        )
        cursor.execute(
            'CREATE INDEX IF NOT EXISTS idx_verifications_origin '
            'ON verifications(provider_key, plan_key, origin_fingerprint, created_at)'
        )
        cursor.execute(
            'CREATE INDEX IF NOT EXISTS idx_verifications_expiry '
            'ON verifications(status, expires_at)'
        )


def health_check(db_path: Optional[str] = None) -> bool:
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            required_tables = ['verifications', 'votes', 'acceptance']
            return all(table in table_names for table in required_tables)
    except (sqlite3.Error, StoreUnavailableError):
        return False

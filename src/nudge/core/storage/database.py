"""SQLite database management for the coaching data store.

Handles connection lifecycle, schema creation and the single-writer
transaction used by the delivery gate.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS participants (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL DEFAULT '',
    email       TEXT NOT NULL DEFAULT '',
    role        TEXT NOT NULL DEFAULT 'participant',
    status      TEXT NOT NULL DEFAULT 'active',
    timezone    TEXT NOT NULL DEFAULT 'UTC',
    coach_id    TEXT,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS macro_targets (
    user_id        TEXT PRIMARY KEY REFERENCES participants(id) ON DELETE CASCADE,
    protein_g      REAL,
    carbs_g        REAL,
    calories_kcal  REAL,
    updated_at     TEXT NOT NULL
);

-- Reading payloads are encrypted; kind and timestamps stay queryable
CREATE TABLE IF NOT EXISTS metric_readings (
    id           TEXT PRIMARY KEY,
    user_id      TEXT NOT NULL REFERENCES participants(id) ON DELETE CASCADE,
    kind         TEXT NOT NULL,
    value_enc    TEXT NOT NULL,
    source       TEXT NOT NULL DEFAULT 'manual',
    observed_at  TEXT NOT NULL,
    created_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS prompts (
    id                TEXT PRIMARY KEY,
    key               TEXT NOT NULL UNIQUE,
    name              TEXT NOT NULL,
    category          TEXT NOT NULL,
    channel           TEXT NOT NULL,
    message_template  TEXT NOT NULL,
    active            INTEGER NOT NULL DEFAULT 1,
    created_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS prompt_rules (
    id               TEXT PRIMARY KEY,
    key              TEXT NOT NULL UNIQUE,
    prompt_id        TEXT NOT NULL REFERENCES prompts(id) ON DELETE CASCADE,
    trigger_type     TEXT NOT NULL,
    schedule_json    TEXT,
    conditions_json  TEXT,
    cooldown_hours   INTEGER NOT NULL,
    priority         INTEGER NOT NULL,
    active           INTEGER NOT NULL DEFAULT 1,
    created_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS prompt_deliveries (
    id           TEXT PRIMARY KEY,
    user_id      TEXT NOT NULL REFERENCES participants(id) ON DELETE CASCADE,
    prompt_id    TEXT NOT NULL REFERENCES prompts(id) ON DELETE CASCADE,
    rule_id      TEXT,
    fired_at     TEXT NOT NULL,
    context_enc  TEXT,
    status       TEXT NOT NULL DEFAULT 'sent',
    created_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Indexes for common query patterns
CREATE INDEX IF NOT EXISTS idx_readings_user_observed  ON metric_readings(user_id, observed_at);
CREATE INDEX IF NOT EXISTS idx_readings_kind_observed  ON metric_readings(kind, observed_at);
CREATE INDEX IF NOT EXISTS idx_rules_active            ON prompt_rules(active);
CREATE INDEX IF NOT EXISTS idx_rules_prompt            ON prompt_rules(prompt_id);
CREATE INDEX IF NOT EXISTS idx_deliveries_user_prompt  ON prompt_deliveries(user_id, prompt_id, fired_at);
CREATE INDEX IF NOT EXISTS idx_participants_role       ON participants(role, status);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class CoachingDatabase:
    """SQLite database manager for the coaching data store.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    One connection is shared between threads; every use goes through
    :attr:`lock`. Writers that must check-then-insert atomically use
    :meth:`transaction`.

    Usage::

        db = CoachingDatabase(":memory:")
        db.initialize()
        with db.transaction() as conn:
            ...
        db.close()
    """

    def __init__(self, db_path: str = ":memory:", *, timeout: float = 5.0) -> None:
        """Initialize database manager.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
            timeout: Seconds to wait on a locked database before failing.
        """
        self._db_path = db_path
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self.lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_file)
        else:
            target = ":memory:"

        # Autocommit mode; multi-statement units go through transaction().
        self._conn = sqlite3.connect(
            target,
            timeout=self._timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._ensure_schema()
        logger.info("Coaching database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and record the schema version."""
        conn = self.connection
        conn.executescript(_SCHEMA_V1)

        current_version = self.get_schema_version()
        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        with self.lock:
            row = self.connection.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row[0] is not None else 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one serialized write transaction.

        Holds the in-process lock and an SQLite RESERVED lock (``BEGIN
        IMMEDIATE``) so no other writer, in this process or another, can
        interleave between a read and the write that depends on it.
        """
        with self.lock:
            conn = self.connection
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def close(self) -> None:
        """Close the database connection."""
        with self.lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Coaching database closed")

    def __enter__(self) -> CoachingDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()

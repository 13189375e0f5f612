"""SQLite schema for the structured message store.

The schema uses:
- messages: one row per Slack message, keyed by an autoincrement id
  with a UNIQUE constraint on external_id (the Slack ``ts``)
- idx_messages_conversation_ts: ordered (conversation_id, timestamp)
  index serving context windows and thread views
- idx_messages_ts: ordered (timestamp) index serving recency queries

IMPORTANT: Slack ``ts`` values are unique per workspace, and each
workspace gets its own database file, so external_id alone is the
uniqueness key.
"""

import logging
import os
import sqlite3
from pathlib import Path

from .models import Message

logger = logging.getLogger(__name__)

# Current schema version for migrations
SCHEMA_VERSION = 1

# Default PRAGMAs for all connections (centralized to avoid drift)
DEFAULT_PRAGMAS = {
    "journal_mode": "WAL",  # Readers don't block the single writer
    "synchronous": "NORMAL",
    "busy_timeout": 5000,  # Wait up to 5s for locks
}

# INSERT OR IGNORE: the first write of an external_id wins
INSERT_MESSAGE_SQL = """INSERT OR IGNORE INTO messages
    (external_id, text, sender, conversation_id, conversation_name,
     timestamp, is_self_authored, parent_thread_id)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)"""

# Column list matching row_to_message()
MESSAGE_COLUMNS = (
    "id, external_id, text, sender, conversation_id, conversation_name, "
    "timestamp, is_self_authored, parent_thread_id"
)


def message_to_row(
    message: Message,
) -> tuple[str, str, str, str, str, int, int, str | None]:
    """
    Convert a Message to a database row tuple.

    Returns:
        Tuple matching INSERT_MESSAGE_SQL parameter order
    """
    return (
        message.external_id,
        message.text,
        message.sender,
        message.conversation_id,
        message.conversation_name,
        message.timestamp,
        1 if message.is_self_authored else 0,
        message.parent_thread_id,
    )


def row_to_message(row: sqlite3.Row) -> Message:
    """Convert a row selected with MESSAGE_COLUMNS back to a Message."""
    return Message(
        id=row["id"],
        external_id=row["external_id"],
        text=row["text"],
        sender=row["sender"] or "",
        conversation_id=row["conversation_id"],
        conversation_name=row["conversation_name"] or "",
        timestamp=row["timestamp"],
        is_self_authored=bool(row["is_self_authored"]),
        parent_thread_id=row["parent_thread_id"],
    )


def create_connection(db_path: Path | str) -> sqlite3.Connection:
    """
    Create a database connection with standard configuration.

    Args:
        db_path: Path to the SQLite database file (or ":memory:")

    Returns:
        Configured connection with WAL mode, busy timeout, and Row factory
    """
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    for pragma, value in DEFAULT_PRAGMAS.items():
        conn.execute(f"PRAGMA {pragma}={value}")

    return conn


def get_schema_sql() -> str:
    """Return the complete schema creation SQL."""
    return """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL UNIQUE,    -- Slack ts
    text TEXT NOT NULL,
    sender TEXT,                         -- Resolved display name
    conversation_id TEXT NOT NULL,
    conversation_name TEXT,
    timestamp INTEGER NOT NULL,          -- Unix seconds
    is_self_authored INTEGER NOT NULL DEFAULT 0,
    parent_thread_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation_ts
    ON messages(conversation_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_ts
    ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_thread
    ON messages(parent_thread_id);
"""


def init_database(db_path: Path | str) -> sqlite3.Connection:
    """
    Initialize the database with schema, creating parent directories if needed.

    Args:
        db_path: Path to the SQLite database file (or ":memory:")

    Returns:
        Open database connection

    Security:
        Sets file permissions to 0600 (owner read/write only) on new
        databases, since they hold private message content.
    """
    in_memory = str(db_path) == ":memory:"
    is_new_db = False
    if not in_memory:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        is_new_db = not db_path.exists()

    conn = create_connection(db_path)

    if is_new_db:
        try:
            os.chmod(db_path, 0o600)
            logger.debug("Set secure permissions (0600) on %s", db_path)
        except OSError as e:
            logger.warning(
                "Could not set secure permissions on %s: %s", db_path, e
            )

    sql = "SELECT name FROM sqlite_master "
    sql += "WHERE type='table' AND name='schema_version'"
    cursor = conn.execute(sql)
    if cursor.fetchone() is None:
        logger.info(
            "Creating fresh database schema (version %d)", SCHEMA_VERSION
        )
        conn.executescript(get_schema_sql())
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
        )
        conn.commit()
    else:
        cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
        row = cursor.fetchone()
        current_version = row[0] if row else 0

        if current_version < SCHEMA_VERSION:
            logger.info(
                "Migrating database from version %d to %d",
                current_version,
                SCHEMA_VERSION,
            )
            _run_migrations(conn, current_version, SCHEMA_VERSION)

    return conn


def _run_migrations(
    conn: sqlite3.Connection, from_version: int, to_version: int
) -> None:
    """
    Run schema migrations.

    Version 0 means the version row is missing; the schema script is
    idempotent, so re-running it brings the tables up to date.
    """
    if from_version < 1:
        conn.executescript(get_schema_sql())
        conn.execute("DELETE FROM schema_version")
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)", (to_version,)
        )

    conn.execute("UPDATE schema_version SET version = ?", (to_version,))
    conn.commit()

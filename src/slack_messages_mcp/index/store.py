"""Structured message store backed by SQLite.

Provides:
- MessageStore.insert_batch(): Atomic, idempotent bulk insert
- range_before() / range_after(): Context windows within a conversation
- most_recent(), by_sender_substring(), find_by_conversation_substring()
- aggregate_by_sender() / aggregate_by_conversation(): Browse views

Range queries are served by the (conversation_id, timestamp) and
(timestamp) indexes created in schema.py.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models import ContactSummary, ConversationSummary, Message
from .schema import (
    INSERT_MESSAGE_SQL,
    MESSAGE_COLUMNS,
    message_to_row,
    row_to_message,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

# SQLite variable limit safety for IN (...) lookups
LOOKUP_BATCH_SIZE = 500


@dataclass
class CorpusCounts:
    """Aggregate counts over every stored message."""

    total_messages: int
    total_conversations: int
    total_senders: int
    oldest_timestamp: int | None
    newest_timestamp: int | None


def like_pattern(text: str) -> str:
    """Build a case-insensitive LIKE substring pattern (ESCAPE '\\')."""
    escaped = (
        text.lower()
        .replace("\\", "\\\\")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )
    return f"%{escaped}%"


class MessageStore:
    """Durable, ordered record set of Messages."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ─────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────

    def insert_batch(self, messages: Iterable[Message]) -> int:
        """
        Insert a batch of messages in a single transaction.

        Duplicate external_ids are ignored (first write wins). Either every
        row of the batch becomes visible or none does.

        Args:
            messages: Messages to insert (``id`` is ignored)

        Returns:
            Number of rows actually inserted
        """
        rows = [message_to_row(m) for m in messages]
        if not rows:
            return 0

        before = self._conn.total_changes
        with self._conn:
            self._conn.executemany(INSERT_MESSAGE_SQL, rows)
        inserted = self._conn.total_changes - before

        logger.debug(
            "Inserted %d of %d messages (%d duplicates ignored)",
            inserted,
            len(rows),
            len(rows) - inserted,
        )
        return inserted

    # ─────────────────────────────────────────────────────────────────
    # Lookups
    # ─────────────────────────────────────────────────────────────────

    def _select(
        self,
        where: str,
        params: Iterable,
        order: str,
        limit: int | None = None,
    ) -> list[Message]:
        sql = f"SELECT {MESSAGE_COLUMNS} FROM messages"
        params = list(params)
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        cursor = self._conn.execute(sql, params)
        return [row_to_message(row) for row in cursor]

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    def corpus_counts(self) -> CorpusCounts:
        row = self._conn.execute(
            """SELECT COUNT(*),
                      COUNT(DISTINCT conversation_id),
                      COUNT(DISTINCT sender),
                      MIN(timestamp),
                      MAX(timestamp)
               FROM messages"""
        ).fetchone()
        return CorpusCounts(
            total_messages=row[0],
            total_conversations=row[1],
            total_senders=row[2],
            oldest_timestamp=row[3],
            newest_timestamp=row[4],
        )

    def get_by_external_ids(self, external_ids: Iterable[str]) -> list[Message]:
        """Fetch stored messages by external_id, ordered by store id."""
        ids = list(dict.fromkeys(external_ids))
        found: list[Message] = []
        for start in range(0, len(ids), LOOKUP_BATCH_SIZE):
            chunk = ids[start : start + LOOKUP_BATCH_SIZE]
            placeholders = ", ".join("?" for _ in chunk)
            found.extend(
                self._select(f"external_id IN ({placeholders})", chunk, "id")
            )
        found.sort(key=lambda m: m.id or 0)
        return found

    def iter_all(self, batch_size: int = 5000) -> Iterator[list[Message]]:
        """Yield every stored message in (timestamp, id) order, in batches."""
        cursor = self._conn.execute(
            f"SELECT {MESSAGE_COLUMNS} FROM messages ORDER BY timestamp, id"
        )
        while True:
            rows = cursor.fetchmany(batch_size)
            if not rows:
                return
            yield [row_to_message(row) for row in rows]

    def range_before(
        self, conversation_id: str, timestamp: int, n: int
    ) -> list[Message]:
        """
        The ``n`` most recent messages strictly before ``timestamp``.

        Returns:
            Messages in ascending (oldest-first) order
        """
        if n <= 0:
            return []
        messages = self._select(
            "conversation_id = ? AND timestamp < ?",
            (conversation_id, timestamp),
            "timestamp DESC, id DESC",
            limit=n,
        )
        messages.reverse()
        return messages

    def range_after(
        self, conversation_id: str, timestamp: int, n: int
    ) -> list[Message]:
        """
        The ``n`` earliest messages strictly after ``timestamp``.

        Returns:
            Messages in ascending order
        """
        if n <= 0:
            return []
        return self._select(
            "conversation_id = ? AND timestamp > ?",
            (conversation_id, timestamp),
            "timestamp ASC, id ASC",
            limit=n,
        )

    def most_recent(self, n: int) -> list[Message]:
        """Global top-``n`` messages, newest first."""
        return self._select("", (), "timestamp DESC, id DESC", limit=n)

    def by_sender_substring(
        self,
        pattern: str,
        after_timestamp: int = 0,
        n: int = 20,
        exclude_self_authored: bool = True,
    ) -> list[Message]:
        """
        Messages whose sender contains ``pattern`` (case-insensitive).

        Args:
            pattern: Substring of the sender's display name
            after_timestamp: Only messages at or after this Unix time
            n: Maximum results
            exclude_self_authored: Drop messages written by the token owner

        Returns:
            Messages ordered newest first
        """
        where = "LOWER(sender) LIKE ? ESCAPE '\\' AND timestamp >= ?"
        params: list = [like_pattern(pattern), after_timestamp]
        if exclude_self_authored:
            where += " AND is_self_authored = 0"
        return self._select(where, params, "timestamp DESC, id DESC", limit=n)

    def find_by_conversation_substring(
        self, pattern: str, after_timestamp: int = 0, n: int = 100
    ) -> list[Message]:
        """
        Messages in conversations whose name contains ``pattern``.

        Returns:
            Messages in chronological (ascending) order
        """
        return self._select(
            "LOWER(conversation_name) LIKE ? ESCAPE '\\' AND timestamp >= ?",
            (like_pattern(pattern), after_timestamp),
            "timestamp ASC, id ASC",
            limit=n,
        )

    # ─────────────────────────────────────────────────────────────────
    # Aggregates
    # ─────────────────────────────────────────────────────────────────

    def aggregate_by_sender(self, n: int = 20) -> list[ContactSummary]:
        """Senders (other than the token owner) by most recent activity."""
        cursor = self._conn.execute(
            """
            SELECT
                sender AS name,
                COUNT(*) AS message_count,
                MAX(timestamp) AS last_timestamp,
                (SELECT m2.text FROM messages m2
                 WHERE m2.sender = messages.sender
                   AND m2.is_self_authored = 0
                 ORDER BY m2.timestamp DESC, m2.id DESC LIMIT 1) AS last_text
            FROM messages
            WHERE sender != '' AND is_self_authored = 0
            GROUP BY sender
            ORDER BY last_timestamp DESC
            LIMIT ?
            """,
            (n,),
        )
        return [
            ContactSummary(
                name=row["name"],
                message_count=row["message_count"],
                last_timestamp=row["last_timestamp"],
                last_text=row["last_text"] or "",
            )
            for row in cursor
        ]

    def aggregate_by_conversation(self, n: int = 20) -> list[ConversationSummary]:
        """Conversations by most recent activity, with the last message."""
        cursor = self._conn.execute(
            """
            SELECT
                conversation_id,
                MAX(conversation_name) AS conversation_name,
                COUNT(*) AS message_count,
                MAX(timestamp) AS last_timestamp,
                (SELECT m2.text FROM messages m2
                 WHERE m2.conversation_id = messages.conversation_id
                 ORDER BY m2.timestamp DESC, m2.id DESC LIMIT 1) AS last_text
            FROM messages
            WHERE conversation_name != ''
            GROUP BY conversation_id
            ORDER BY last_timestamp DESC
            LIMIT ?
            """,
            (n,),
        )
        return [
            ConversationSummary(
                conversation_id=row["conversation_id"],
                conversation_name=row["conversation_name"],
                message_count=row["message_count"],
                last_timestamp=row["last_timestamp"],
                last_text=row["last_text"] or "",
            )
            for row in cursor
        ]

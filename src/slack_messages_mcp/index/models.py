"""Record types shared by the store, fuzzy index, sync and search.

Every row crossing the storage boundary is one of these dataclasses;
nothing is passed around as an untyped dict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation


def ts_to_unix(external_id: str) -> int:
    """Convert a Slack timestamp like ``"1700000000.123456"`` to seconds."""
    return int(Decimal(external_id))


def ts_sort_key(external_id: str) -> Decimal:
    """Ordering key for Slack timestamps (numeric, not lexicographic)."""
    try:
        return Decimal(external_id)
    except InvalidOperation:
        return Decimal(0)


def max_ts(*external_ids: str | None) -> str | None:
    """Largest of the given Slack timestamps, ignoring None."""
    present = [ts for ts in external_ids if ts]
    if not present:
        return None
    return max(present, key=ts_sort_key)


@dataclass
class Message:
    """A single indexed chat message.

    ``id`` is assigned by the structured store and is None until the
    message has been inserted.
    """

    external_id: str
    text: str
    sender: str
    conversation_id: str
    conversation_name: str
    timestamp: int
    is_self_authored: bool = False
    parent_thread_id: str | None = None
    id: int | None = None


@dataclass
class ContactSummary:
    """Per-sender aggregate computed from stored messages."""

    name: str
    message_count: int
    last_timestamp: int
    last_text: str


@dataclass
class ConversationSummary:
    """Per-conversation aggregate computed from stored messages."""

    conversation_id: str
    conversation_name: str
    message_count: int
    last_timestamp: int
    last_text: str


@dataclass
class SearchHit:
    """A search result with its surrounding conversation context."""

    message: Message
    score: float
    matched_terms: list[str] = field(default_factory=list)
    before: list[Message] = field(default_factory=list)
    after: list[Message] = field(default_factory=list)


@dataclass
class CorpusStats:
    """Snapshot of the indexed corpus plus the per-conversation cursors."""

    total_messages: int
    total_conversations: int
    total_senders: int
    oldest_timestamp: int | None
    newest_timestamp: int | None
    indexed_at: datetime
    workspace_id: str
    workspace_name: str
    conversation_cursors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_messages": self.total_messages,
            "total_conversations": self.total_conversations,
            "total_senders": self.total_senders,
            "oldest_timestamp": self.oldest_timestamp,
            "newest_timestamp": self.newest_timestamp,
            "indexed_at": self.indexed_at.isoformat(),
            "workspace_id": self.workspace_id,
            "workspace_name": self.workspace_name,
            "conversation_cursors": dict(self.conversation_cursors),
        }

    @classmethod
    def from_dict(cls, data: dict) -> CorpusStats:
        return cls(
            total_messages=int(data["total_messages"]),
            total_conversations=int(data["total_conversations"]),
            total_senders=int(data["total_senders"]),
            oldest_timestamp=data.get("oldest_timestamp"),
            newest_timestamp=data.get("newest_timestamp"),
            indexed_at=datetime.fromisoformat(data["indexed_at"]),
            workspace_id=data["workspace_id"],
            workspace_name=data["workspace_name"],
            conversation_cursors={
                str(k): str(v)
                for k, v in data.get("conversation_cursors", {}).items()
            },
        )

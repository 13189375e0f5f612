"""
Slack Messages MCP Server

Provides MCP tools for searching a locally indexed Slack workspace.
Every tool reads the index built by `slack-messages index`; nothing here
talks to Slack unless a search explicitly asks for a refresh.

TOOLS (6 total):
- search_messages(query?, sender?, after?, ...) - Fuzzy search with context
- recent_messages(limit?) - Newest messages across all conversations
- list_contacts(limit?) - People by most recent activity
- list_conversations(limit?) - Channels and DMs by most recent activity
- get_thread(channel, after?, limit?) - A conversation in chronological order
- get_message_stats() - Index statistics
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

from typing_extensions import TypedDict

from fastmcp import FastMCP

from .exceptions import IndexNotFoundError, NotConfiguredError, SlackMessagesError
from .formatting import parse_date
from .index import IndexStatus, open_index

if TYPE_CHECKING:
    from collections.abc import Callable

    from .index import IndexManager
    from .index.models import Message, SearchHit

mcp = FastMCP("Slack Messages")


# ========== Response Type Definitions ==========


class MessageRecord(TypedDict):
    """A single Slack message."""

    id: str
    text: str
    sender: str
    channel: str
    date: str
    from_me: bool


class SearchResult(TypedDict):
    """A search hit with surrounding conversation context."""

    message: MessageRecord
    score: float
    matched_terms: list[str]
    before: list[MessageRecord]
    after: list[MessageRecord]


class Contact(TypedDict):
    """A person the user exchanges messages with."""

    name: str
    message_count: int
    last_message_date: str
    last_message: str


class Conversation(TypedDict):
    """A channel, group or DM."""

    id: str
    name: str
    message_count: int
    last_message_date: str
    last_message: str


class MessageStats(TypedDict):
    """Statistics about the indexed workspace."""

    workspace: str
    total_messages: int
    total_conversations: int
    total_senders: int
    oldest_message: str | None
    newest_message: str | None
    indexed_at: str


# ========== Helper Functions ==========


def _iso(timestamp: int | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp).isoformat()


def _message_record(message: Message) -> MessageRecord:
    return {
        "id": message.external_id,
        "text": message.text,
        "sender": message.sender,
        "channel": message.conversation_name,
        "date": _iso(message.timestamp) or "",
        "from_me": message.is_self_authored,
    }


def _search_result(hit: SearchHit) -> SearchResult:
    return {
        "message": _message_record(hit.message),
        "score": hit.score,
        "matched_terms": list(hit.matched_terms),
        "before": [_message_record(m) for m in hit.before],
        "after": [_message_record(m) for m in hit.after],
    }


def _with_index(operation: Callable[[IndexManager], object]):
    """
    Run ``operation`` against the default workspace index.

    Blocking; call through asyncio.to_thread. Missing prerequisites and
    sync failures surface to the client as ValueError.
    """
    with open_index() as index:
        status = index.status()
        if status is IndexStatus.NOT_CONFIGURED:
            raise ValueError(str(NotConfiguredError()))
        if status is IndexStatus.NO_INDEX:
            raise ValueError(str(IndexNotFoundError()))
        try:
            return operation(index)
        except SlackMessagesError as e:
            raise ValueError(str(e)) from e


# ========== MCP Tools (6 total) ==========


@mcp.tool
async def search_messages(
    query: str | None = None,
    sender: str | None = None,
    after: str | None = None,
    limit: int = 10,
    context: int = 2,
    refresh: bool = False,
) -> list[SearchResult]:
    """
    Search Slack messages with fuzzy matching (typos and prefixes are OK).

    Search by text, by sender, or both. With only ``sender``, returns that
    person's most recent messages.

    Args:
        query: Words to search for in message text, sender or channel name
        sender: Filter by sender name substring (e.g., "john")
        after: Only messages on or after this date (YYYY-MM-DD)
        limit: Maximum number of results (default: 10)
        context: Messages shown before and after each result (default: 2)
        refresh: Fetch new messages from Slack before searching

    Returns:
        Matching messages, most relevant first, each with context.

    Examples:
        >>> search_messages("deadline")
        >>> search_messages("deploy", sender="alice", after="2024-01-01")
        >>> search_messages(sender="bob")
    """
    if not (query and query.strip()) and not (sender and sender.strip()):
        raise ValueError(
            'Provide a "query" to search message content, a "sender" to '
            "filter by person, or both."
        )
    after_date = parse_date(after)

    hits = await asyncio.to_thread(
        _with_index,
        lambda index: index.search(
            query,
            sender=sender,
            after=after_date,
            limit=limit,
            context=context,
            refresh_first=refresh,
        ),
    )
    return [_search_result(hit) for hit in hits]


@mcp.tool
async def recent_messages(limit: int = 20) -> list[MessageRecord]:
    """
    Get the most recent messages across all channels and DMs.

    Args:
        limit: Maximum number of messages (default: 20)

    Returns:
        Messages, newest first.
    """
    messages = await asyncio.to_thread(
        _with_index, lambda index: index.recent(limit)
    )
    return [_message_record(m) for m in messages]


@mcp.tool
async def list_contacts(limit: int = 20) -> list[Contact]:
    """
    List people who have sent messages, by most recent activity.

    Args:
        limit: Maximum number of contacts (default: 20)
    """
    contacts = await asyncio.to_thread(
        _with_index, lambda index: index.contacts(limit)
    )
    return [
        {
            "name": c.name,
            "message_count": c.message_count,
            "last_message_date": _iso(c.last_timestamp) or "",
            "last_message": c.last_text,
        }
        for c in contacts
    ]


@mcp.tool
async def list_conversations(limit: int = 20) -> list[Conversation]:
    """
    List channels and DMs with message counts and the last message.

    Args:
        limit: Maximum number of conversations (default: 20)
    """
    conversations = await asyncio.to_thread(
        _with_index, lambda index: index.conversations(limit)
    )
    return [
        {
            "id": c.conversation_id,
            "name": c.conversation_name,
            "message_count": c.message_count,
            "last_message_date": _iso(c.last_timestamp) or "",
            "last_message": c.last_text,
        }
        for c in conversations
    ]


@mcp.tool
async def get_thread(
    channel: str,
    after: str | None = None,
    limit: int = 50,
) -> list[MessageRecord]:
    """
    Get the conversation in a channel or DM in chronological order.

    Args:
        channel: Channel or DM name (substring match, e.g. "general")
        after: Only messages on or after this date (YYYY-MM-DD)
        limit: Maximum number of messages (default: 50)
    """
    after_date = parse_date(after)
    messages = await asyncio.to_thread(
        _with_index,
        lambda index: index.thread(channel, after=after_date, limit=limit),
    )
    return [_message_record(m) for m in messages]


@mcp.tool
async def get_message_stats() -> MessageStats:
    """
    Get statistics about the indexed Slack workspace.

    Returns:
        Message, channel and user counts, date range and last index time.
    """
    stats = await asyncio.to_thread(_with_index, lambda index: index.get_stats())
    return {
        "workspace": stats.workspace_name,
        "total_messages": stats.total_messages,
        "total_conversations": stats.total_conversations,
        "total_senders": stats.total_senders,
        "oldest_message": _iso(stats.oldest_timestamp),
        "newest_message": _iso(stats.newest_timestamp),
        "indexed_at": stats.indexed_at.isoformat(),
    }

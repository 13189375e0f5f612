"""Query engine over the message store and the fuzzy index.

Provides:
- normalize_text_query(): Map "", whitespace and "*" to "no text query"
- search_messages(): Sender-only or fuzzy text search, with context

Query shapes:
- sender only: MessageStore.by_sender_substring(), flat score 1.0
- text (+ optional sender/after): FuzzyIndex.search() with a filter
  predicate and an inflated limit when filters are present
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from ..config import get_filter_overfetch
from .models import Message, SearchHit

if TYPE_CHECKING:
    from collections.abc import Callable

    from .fuzzy import FuzzyIndex
    from .store import MessageStore

logger = logging.getLogger(__name__)

WILDCARD = "*"

# Sender-only results have no ranking signal
FLAT_SCORE = 1.0


def normalize_text_query(query: str | None) -> str | None:
    """Return the usable text query, or None if there is none."""
    if query is None:
        return None
    query = query.strip()
    if not query or query == WILDCARD:
        return None
    return query


def to_unix(after: datetime | int | None) -> int | None:
    if after is None:
        return None
    if isinstance(after, datetime):
        return int(after.timestamp())
    return int(after)


def _sender_predicate(
    sender: str | None, after_timestamp: int | None
) -> Callable[[Message], bool] | None:
    if sender is None and after_timestamp is None:
        return None
    needle = sender.lower() if sender else None

    def predicate(message: Message) -> bool:
        if needle is not None:
            if message.is_self_authored or needle not in message.sender.lower():
                return False
        if after_timestamp is not None and message.timestamp < after_timestamp:
            return False
        return True

    return predicate


def attach_context(
    store: MessageStore, hits: list[SearchHit], context: int
) -> list[SearchHit]:
    """Fill ``before``/``after`` from the same conversation (ascending)."""
    if context <= 0:
        return hits
    for hit in hits:
        message = hit.message
        hit.before = store.range_before(
            message.conversation_id, message.timestamp, context
        )
        hit.after = store.range_after(
            message.conversation_id, message.timestamp, context
        )
    return hits


def search_messages(
    store: MessageStore,
    fuzzy: Callable[[], FuzzyIndex],
    query: str | None = None,
    sender: str | None = None,
    after: datetime | int | None = None,
    limit: int = 10,
    context: int = 2,
) -> list[SearchHit]:
    """
    Search indexed messages.

    Args:
        store: Message store (sender-only queries and context)
        fuzzy: Returns the fuzzy index; only called for text queries
        query: Free text; "", whitespace or "*" mean no text
        sender: Case-insensitive substring of the sender name
        after: Only messages at or after this time
        limit: Maximum results
        context: Messages of context before and after each hit

    Returns:
        Hits ordered by relevance (text) or newest first (sender only).
        Empty if neither a text query nor a sender is given.
    """
    text = normalize_text_query(query)
    sender = sender.strip() if sender else None
    after_timestamp = to_unix(after)

    if limit <= 0:
        return []

    if text is None:
        if not sender:
            return []
        messages = store.by_sender_substring(
            sender,
            after_timestamp=after_timestamp or 0,
            n=limit,
            exclude_self_authored=True,
        )
        hits = [SearchHit(message=m, score=FLAT_SCORE) for m in messages]
        logger.debug("Sender search %r: %d hits", sender, len(hits))
        return attach_context(store, hits, context)

    predicate = _sender_predicate(sender, after_timestamp)
    search_limit = limit * get_filter_overfetch() if predicate else limit
    matches = fuzzy().search(text, search_limit, predicate=predicate)
    hits = [
        SearchHit(message=m.message, score=m.score, matched_terms=m.terms)
        for m in matches[:limit]
    ]
    logger.debug("Text search %r: %d hits", text, len(hits))
    return attach_context(store, hits, context)

"""Local message index for fast, typo-tolerant Slack search.

This module provides:
- IndexManager: Main interface for building, syncing, and searching the index
- open_index(): Scoped IndexManager for the default (or named) workspace
- MessageStore: SQLite store answering ordered and filtered lookups
- FuzzyIndex: Inverted index with edit-distance and prefix matching
- IngestionPipeline: Full and incremental sync from the Slack API
"""

from .fuzzy import FuzzyIndex
from .manager import (
    IndexManager,
    IndexStatus,
    SyncOutcome,
    SyncStatus,
    open_index,
)
from .models import CorpusStats, Message, SearchHit
from .store import MessageStore
from .sync import IngestionPipeline, SyncPhase, SyncProgress

__all__ = [
    "CorpusStats",
    "FuzzyIndex",
    "IndexManager",
    "IndexStatus",
    "IngestionPipeline",
    "Message",
    "MessageStore",
    "SearchHit",
    "SyncOutcome",
    "SyncPhase",
    "SyncProgress",
    "SyncStatus",
    "open_index",
]

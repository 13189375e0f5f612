"""IndexManager - Central interface for one workspace's message index.

Provides:
- status(): NOT_CONFIGURED / NO_INDEX / READY, checked before any read
- build_index() / update_index(): Full and incremental sync
- search(): Fuzzy text and sender search with context
- recent(), contacts(), conversations(), thread(): Store reads
- get_stats(): Corpus stats from the registry

A manager owns its database connection and the lazily loaded fuzzy
index. Use it as a context manager (or open_index()) so both are
released on every exit path:

    with open_index() as index:
        hits = index.search("deadline", sender="alice")
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..config import (
    get_default_workspace,
    get_workspace,
    get_workspace_dir,
)
from ..exceptions import IndexNotFoundError, NotConfiguredError
from ..slack import SlackClient
from .fuzzy import FuzzyIndex
from .registry import StatsRegistry
from .schema import init_database
from .search import search_messages, to_unix
from .store import MessageStore
from .sync import IngestionPipeline
from .users import UserDirectory

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Callable, Iterator
    from datetime import datetime
    from pathlib import Path

    from ..config import WorkspaceConfig
    from .models import (
        ContactSummary,
        ConversationSummary,
        CorpusStats,
        Message,
        SearchHit,
    )
    from .sync import ProgressCallback, SlackSource

logger = logging.getLogger(__name__)

DB_FILENAME = "index.db"
FUZZY_FILENAME = "fuzzy.json"
STATS_FILENAME = "stats.json"
USERS_FILENAME = "users.json"


class IndexStatus(str, Enum):
    NOT_CONFIGURED = "not-configured"
    NO_INDEX = "no-index"
    READY = "ready"


class SyncStatus(str, Enum):
    BUILT = "built"
    UPDATED = "updated"
    NO_PRIOR_INDEX = "no-prior-index"


@dataclass
class SyncOutcome:
    """Result of update_index(); ``stats`` is None for NO_PRIOR_INDEX."""

    status: SyncStatus
    stats: CorpusStats | None = None


class IndexManager:
    """
    Owns the store, fuzzy index, registry and user cache of a workspace.

    Files live under ~/.slack-messages/workspaces/<workspace id>/ by
    default (see SLACK_MESSAGES_HOME).
    """

    def __init__(
        self,
        workspace: WorkspaceConfig | None,
        data_dir: Path | None = None,
        client_factory: Callable[[str], SlackSource] = SlackClient,
    ):
        """
        Args:
            workspace: Workspace to operate on (None if nothing is registered)
            data_dir: Override the workspace data directory
            client_factory: Builds the Slack adapter from a token
        """
        self._workspace = workspace
        if data_dir is None and workspace is not None:
            data_dir = get_workspace_dir(workspace.id)
        self._data_dir = data_dir
        self._client_factory = client_factory
        self._conn: sqlite3.Connection | None = None
        self._fuzzy: FuzzyIndex | None = None

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    def __enter__(self) -> IndexManager:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection and drop the fuzzy index."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        self._fuzzy = None

    @property
    def workspace(self) -> WorkspaceConfig | None:
        return self._workspace

    def _require_workspace(self) -> WorkspaceConfig:
        if self._workspace is None or self._data_dir is None:
            raise NotConfiguredError()
        return self._workspace

    def _path(self, filename: str) -> Path:
        self._require_workspace()
        return self._data_dir / filename

    @property
    def db_path(self) -> Path:
        return self._path(DB_FILENAME)

    @property
    def fuzzy_path(self) -> Path:
        return self._path(FUZZY_FILENAME)

    @property
    def stats_path(self) -> Path:
        return self._path(STATS_FILENAME)

    @property
    def users_path(self) -> Path:
        return self._path(USERS_FILENAME)

    def status(self) -> IndexStatus:
        """Whether reads can be served, without raising."""
        if self._workspace is None:
            return IndexStatus.NOT_CONFIGURED
        if self.db_path.exists() and self.stats_path.exists():
            return IndexStatus.READY
        return IndexStatus.NO_INDEX

    def has_index(self) -> bool:
        return self.status() is IndexStatus.READY

    def _store(self) -> MessageStore:
        if self._conn is None:
            self._conn = init_database(self.db_path)
        return MessageStore(self._conn)

    def _read_store(self) -> MessageStore:
        status = self.status()
        if status is IndexStatus.NOT_CONFIGURED:
            raise NotConfiguredError()
        if status is IndexStatus.NO_INDEX:
            raise IndexNotFoundError()
        return self._store()

    def _get_fuzzy(self) -> FuzzyIndex:
        if self._fuzzy is None:
            if not self.fuzzy_path.exists():
                raise IndexNotFoundError()
            self._fuzzy = FuzzyIndex.load(self.fuzzy_path)
            logger.debug("Loaded fuzzy index (%d documents)", len(self._fuzzy))
        return self._fuzzy

    # ─────────────────────────────────────────────────────────────────
    # Sync
    # ─────────────────────────────────────────────────────────────────

    def _pipeline(self) -> IngestionPipeline:
        workspace = self._require_workspace()
        return IngestionPipeline(
            client=self._client_factory(workspace.token),
            store=self._store(),
            registry=StatsRegistry(self.stats_path),
            users=UserDirectory(self.users_path),
            fuzzy_path=self.fuzzy_path,
        )

    def build_index(self, progress: ProgressCallback | None = None) -> CorpusStats:
        """
        Full sync of the workspace.

        Raises:
            NotConfiguredError: If no workspace is registered
            AuthError: If the token is rejected
        """
        pipeline = self._pipeline()
        try:
            return pipeline.build(progress)
        finally:
            self._fuzzy = None

    def update_index(
        self,
        progress: ProgressCallback | None = None,
        fallback_to_build: bool = False,
    ) -> SyncOutcome:
        """
        Incremental sync from the stored cursors.

        Args:
            progress: Optional progress observer
            fallback_to_build: Run a full build when there is no prior index

        Returns:
            SyncOutcome with UPDATED, BUILT (fallback) or NO_PRIOR_INDEX
        """
        pipeline = self._pipeline()
        try:
            stats = pipeline.update(progress)
            if stats is not None:
                return SyncOutcome(SyncStatus.UPDATED, stats)
            if not fallback_to_build:
                return SyncOutcome(SyncStatus.NO_PRIOR_INDEX)
            logger.info("No prior index; running a full build")
            return SyncOutcome(SyncStatus.BUILT, pipeline.build(progress))
        finally:
            self._fuzzy = None

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    def search(
        self,
        query: str | None = None,
        sender: str | None = None,
        after: datetime | int | None = None,
        limit: int = 10,
        context: int = 2,
        refresh_first: bool = False,
    ) -> list[SearchHit]:
        """
        Search messages by text and/or sender.

        Args:
            query: Free text (typo tolerant); "" or "*" for none
            sender: Substring of the sender's name
            after: Only messages at or after this time
            limit: Maximum results
            context: Messages of surrounding context per hit
            refresh_first: Run an incremental sync before searching

        Raises:
            IndexNotFoundError: If no index has been built
        """
        if refresh_first:
            outcome = self.update_index()
            if outcome.status is SyncStatus.NO_PRIOR_INDEX:
                logger.info("Refresh skipped: no prior index")

        return search_messages(
            self._read_store(),
            self._get_fuzzy,
            query=query,
            sender=sender,
            after=after,
            limit=limit,
            context=context,
        )

    def recent(self, limit: int = 20) -> list[Message]:
        return self._read_store().most_recent(limit)

    def contacts(self, limit: int = 20) -> list[ContactSummary]:
        return self._read_store().aggregate_by_sender(limit)

    def conversations(self, limit: int = 20) -> list[ConversationSummary]:
        return self._read_store().aggregate_by_conversation(limit)

    def thread(
        self,
        pattern: str,
        after: datetime | int | None = None,
        limit: int = 100,
    ) -> list[Message]:
        """Messages in conversations matching ``pattern``, oldest first."""
        return self._read_store().find_by_conversation_substring(
            pattern, after_timestamp=to_unix(after) or 0, n=limit
        )

    def get_stats(self) -> CorpusStats:
        """
        Corpus stats as of the last sync.

        Raises:
            IndexNotFoundError: If no sync has completed
        """
        self._require_workspace()
        stats = StatsRegistry(self.stats_path).load()
        if stats is None:
            raise IndexNotFoundError()
        return stats


@contextmanager
def open_index(workspace_id: str | None = None) -> Iterator[IndexManager]:
    """
    Open the index of a registered workspace (the default if None).

    The yielded manager reports NOT_CONFIGURED when nothing is registered.

    Raises:
        NotConfiguredError: If ``workspace_id`` names an unknown workspace
    """
    if workspace_id:
        workspace = get_workspace(workspace_id)
        if workspace is None:
            raise NotConfiguredError(
                f"Workspace {workspace_id} is not registered. "
                "Run `slack-messages workspaces` to list registered workspaces."
            )
    else:
        workspace = get_default_workspace()

    manager = IndexManager(workspace)
    try:
        yield manager
    finally:
        manager.close()

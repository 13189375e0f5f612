"""Ingestion pipeline: pull messages from Slack into both indexes.

Two entry points:
- IngestionPipeline.build(): Full sync of every visible conversation
- IngestionPipeline.update(): Incremental sync bounded by stored cursors

Fetching runs on a thread pool (one task per conversation), but every
write to the message store, the fuzzy index and the stats registry
happens under a single commit lock. Cursors are saved last, so an
interrupted sync is resumed by simply running it again: inserts are
idempotent by external_id and the fuzzy index skips known documents.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from decimal import InvalidOperation
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from ..config import get_fetch_workers
from ..exceptions import ConversationAccessError, SnapshotCorruptError
from .fuzzy import FuzzyIndex
from .models import CorpusStats, Message, max_ts, ts_to_unix

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from ..slack import AuthInfo, SlackConversation, SlackMessage, SlackUser
    from .registry import StatsRegistry
    from .store import MessageStore
    from .users import UserDirectory

logger = logging.getLogger(__name__)

# Documents added to the fuzzy index per progress step
FUZZY_BATCH_SIZE = 5000

# One committer at a time across every pipeline in this process
_COMMIT_LOCK = threading.Lock()


class SyncPhase(str, Enum):
    AUTHENTICATING = "authenticating"
    RESOLVING_USERS = "resolving-users"
    RESOLVING_CONVERSATIONS = "resolving-conversations"
    FETCHING_MESSAGES = "fetching-messages"
    FETCHING_THREADS = "fetching-threads"
    INDEXING_EXACT = "indexing-exact"
    INDEXING_FUZZY = "indexing-fuzzy"
    DONE = "done"


@dataclass
class SyncProgress:
    """One progress event. ``current`` never decreases within a phase."""

    phase: SyncPhase
    current: int = 0
    total: int = 0
    detail: str = ""


ProgressCallback = Callable[[SyncProgress], None]


class SlackSource(Protocol):
    """The remote operations the pipeline depends on."""

    def authenticate(self) -> AuthInfo: ...

    def list_users(self) -> list[SlackUser]: ...

    def list_conversations(self) -> list[SlackConversation]: ...

    def fetch_history(
        self, conversation_id: str, oldest: str | None = None
    ) -> Iterable[SlackMessage]: ...

    def fetch_thread_replies(
        self, conversation_id: str, parent_id: str
    ) -> Iterable[SlackMessage]: ...


@dataclass
class ConversationBatch:
    """Everything fetched for one conversation during a sync."""

    conversation: SlackConversation
    name: str
    messages: list[SlackMessage] = field(default_factory=list)

    @property
    def thread_parents(self) -> list[SlackMessage]:
        return [m for m in self.messages if m.reply_count > 0]

    @property
    def newest_external_id(self) -> str | None:
        return max_ts(*(m.external_id for m in self.messages))


def conversation_display_name(
    conversation: SlackConversation, users: UserDirectory
) -> str:
    """DMs are named after the counterpart; everything else keeps its name."""
    if conversation.is_direct_message and conversation.counterpart_user_id:
        return users.resolve(conversation.counterpart_user_id)
    return conversation.name


def merge_cursors(
    existing: dict[str, str], observed: dict[str, str]
) -> dict[str, str]:
    """Per-conversation max of two cursor maps (numeric ts comparison)."""
    merged = dict(existing)
    for conversation_id, external_id in observed.items():
        merged[conversation_id] = max_ts(merged.get(conversation_id), external_id)
    return merged


class IngestionPipeline:
    """
    Full and incremental sync for one workspace.

    Args:
        client: Slack adapter (anything implementing SlackSource)
        store: Structured message store
        registry: Cursor and stats record
        users: User resolution cache
        fuzzy_path: Where the fuzzy index snapshot lives
        workers: Concurrent conversation fetches (config default if None)
    """

    def __init__(
        self,
        client: SlackSource,
        store: MessageStore,
        registry: StatsRegistry,
        users: UserDirectory,
        fuzzy_path: Path,
        workers: int | None = None,
    ):
        self.client = client
        self.store = store
        self.registry = registry
        self.users = users
        self.fuzzy_path = fuzzy_path
        self.workers = workers or get_fetch_workers()
        self._progress: ProgressCallback | None = None

    def _emit(
        self, phase: SyncPhase, current: int = 0, total: int = 0, detail: str = ""
    ) -> None:
        if self._progress is not None:
            self._progress(SyncProgress(phase, current, total, detail))

    # ─────────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────────

    def build(
        self, progress: ProgressCallback | None = None
    ) -> CorpusStats:
        """
        Full sync: fetch every conversation from the beginning.

        The store is kept; re-inserting existing messages is a no-op, and
        the fuzzy index is rebuilt from the store afterwards.

        Raises:
            AuthError: If the token is rejected (before any write)
        """
        self._progress = progress
        try:
            auth = self._authenticate()

            self._emit(SyncPhase.RESOLVING_USERS, 0, 1, "Fetching users...")
            self.users.load_from_slack(self.client.list_users())
            self.users.save()
            self._emit(SyncPhase.RESOLVING_USERS, 1, 1)

            conversations = self._list_conversations()
            batches = self._fetch_all(conversations, cursors={})

            with _COMMIT_LOCK:
                self._commit_exact(batches, auth)
                total = self.store.count()
                self._emit(SyncPhase.INDEXING_FUZZY, 0, total)
                fuzzy = FuzzyIndex()
                indexed = 0
                for chunk in self.store.iter_all(FUZZY_BATCH_SIZE):
                    fuzzy.add_batch(chunk)
                    indexed += len(chunk)
                    self._emit(SyncPhase.INDEXING_FUZZY, indexed, total)
                fuzzy.save(self.fuzzy_path)

                observed = _observed(batches)
                cursors = merge_cursors(self._saved_cursors(), observed)
                stats = self._finish(auth, cursors)

            logger.info(
                "Full sync complete: %d messages in %d conversations",
                stats.total_messages,
                stats.total_conversations,
            )
            return stats
        finally:
            self._progress = None

    def update(
        self, progress: ProgressCallback | None = None
    ) -> CorpusStats | None:
        """
        Incremental sync: fetch only messages newer than each cursor.

        Returns:
            Updated CorpusStats, or None if there is no prior index to
            extend (the caller should run build() instead)

        Raises:
            AuthError: If the token is rejected (before any write)
            SnapshotCorruptError: If the stored fuzzy index or user cache is
                unreadable
        """
        previous = self.registry.load()
        if previous is None or not previous.conversation_cursors:
            logger.info("No prior cursors; incremental sync not possible")
            return None

        self._progress = progress
        try:
            auth = self._authenticate()

            self._emit(SyncPhase.RESOLVING_USERS, 0, 1, "Loading cached users...")
            if not self.users.load():
                logger.warning(
                    "User cache missing; senders will show as raw IDs until "
                    "the next full index"
                )
            self._emit(SyncPhase.RESOLVING_USERS, 1, 1)

            conversations = self._list_conversations()
            batches = self._fetch_all(
                conversations, cursors=previous.conversation_cursors
            )
            observed = _observed(batches)

            with _COMMIT_LOCK:
                # Another sync may have committed while this one was fetching
                latest = self.registry.load() or previous
                cursors = merge_cursors(latest.conversation_cursors, observed)

                if not any(b.messages for b in batches):
                    stats = dataclasses.replace(
                        latest,
                        indexed_at=datetime.now(),
                        conversation_cursors=cursors,
                    )
                    self.registry.save(stats)
                    self._emit(SyncPhase.DONE, 0, 0, "No new messages")
                    logger.info("Incremental sync: no new messages")
                    return stats

                fuzzy = self._load_fuzzy()
                self._commit_exact(batches, auth)

                external_ids = [m.external_id for b in batches for m in b.messages]
                stored = self.store.get_by_external_ids(external_ids)
                self._emit(SyncPhase.INDEXING_FUZZY, 0, len(stored))
                added = 0
                for start in range(0, len(stored), FUZZY_BATCH_SIZE):
                    chunk = stored[start : start + FUZZY_BATCH_SIZE]
                    added += fuzzy.add_batch(chunk)
                    self._emit(
                        SyncPhase.INDEXING_FUZZY,
                        start + len(chunk),
                        len(stored),
                    )
                fuzzy.save(self.fuzzy_path)

                stats = self._finish(auth, cursors)

            logger.info(
                "Incremental sync complete: +%d messages (%d total)",
                added,
                stats.total_messages,
            )
            return stats
        finally:
            self._progress = None

    # ─────────────────────────────────────────────────────────────────
    # Phases
    # ─────────────────────────────────────────────────────────────────

    def _authenticate(self) -> AuthInfo:
        self._emit(SyncPhase.AUTHENTICATING, 0, 1, "Authenticating...")
        auth = self.client.authenticate()
        self._emit(SyncPhase.AUTHENTICATING, 1, 1, auth.workspace_name)
        logger.info(
            "Authenticated to %s (%s)", auth.workspace_name, auth.workspace_id
        )
        return auth

    def _list_conversations(self) -> list[ConversationBatch]:
        self._emit(
            SyncPhase.RESOLVING_CONVERSATIONS, 0, 1, "Fetching conversations..."
        )
        conversations = self.client.list_conversations()
        batches = [
            ConversationBatch(
                conversation=c, name=conversation_display_name(c, self.users)
            )
            for c in conversations
        ]
        self._emit(SyncPhase.RESOLVING_CONVERSATIONS, 1, 1)
        logger.debug("Resolved %d conversations", len(batches))
        return batches

    def _fetch_all(
        self, batches: list[ConversationBatch], cursors: dict[str, str]
    ) -> list[ConversationBatch]:
        """
        Fetch history, then thread replies, for every conversation.

        Conversations that fail either step, including on network errors,
        are dropped from the result.
        """
        total = len(batches)
        self._emit(SyncPhase.FETCHING_MESSAGES, 0, total)

        fetched: list[ConversationBatch] = []
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {
                pool.submit(
                    self._fetch_history,
                    batch,
                    cursors.get(batch.conversation.id),
                ): batch
                for batch in batches
            }
            done = 0
            for future in as_completed(futures):
                batch = futures[future]
                done += 1
                try:
                    batch.messages = future.result()
                    fetched.append(batch)
                except (ConversationAccessError, OSError) as e:
                    logger.warning("Skipping #%s: %s", batch.name, e)
                self._emit(SyncPhase.FETCHING_MESSAGES, done, total, f"#{batch.name}")

        threaded = [b for b in fetched if b.thread_parents]
        self._emit(SyncPhase.FETCHING_THREADS, 0, len(threaded))
        failed: set[str] = set()
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {pool.submit(self._fetch_threads, b): b for b in threaded}
            done = 0
            for future in as_completed(futures):
                batch = futures[future]
                done += 1
                try:
                    batch.messages.extend(future.result())
                except (ConversationAccessError, OSError) as e:
                    logger.warning("Skipping #%s (threads): %s", batch.name, e)
                    failed.add(batch.conversation.id)
                self._emit(
                    SyncPhase.FETCHING_THREADS, done, len(threaded), f"#{batch.name}"
                )

        # Keep the listing order so commits are deterministic
        order = {b.conversation.id: i for i, b in enumerate(batches)}
        result = [b for b in fetched if b.conversation.id not in failed]
        result.sort(key=lambda b: order[b.conversation.id])
        logger.info(
            "Fetched %d messages from %d conversations (%d skipped)",
            sum(len(b.messages) for b in result),
            len(result),
            total - len(result),
        )
        return result

    def _fetch_history(
        self, batch: ConversationBatch, oldest: str | None
    ) -> list[SlackMessage]:
        messages = list(self.client.fetch_history(batch.conversation.id, oldest))
        logger.debug("#%s: %d messages", batch.name, len(messages))
        return messages

    def _fetch_threads(self, batch: ConversationBatch) -> list[SlackMessage]:
        replies: list[SlackMessage] = []
        for parent in batch.thread_parents:
            replies.extend(
                self.client.fetch_thread_replies(
                    batch.conversation.id, parent.external_id
                )
            )
        return replies

    def _normalize(
        self, batch: ConversationBatch, auth: AuthInfo
    ) -> list[Message]:
        messages: list[Message] = []
        for raw in batch.messages:
            try:
                timestamp = ts_to_unix(raw.external_id)
            except InvalidOperation:
                logger.debug("Skipping message with bad ts %r", raw.external_id)
                continue
            messages.append(
                Message(
                    external_id=raw.external_id,
                    text=raw.text,
                    sender=self.users.resolve(raw.user_id) if raw.user_id else "",
                    conversation_id=batch.conversation.id,
                    conversation_name=batch.name,
                    timestamp=timestamp,
                    is_self_authored=raw.user_id == auth.user_id,
                    parent_thread_id=raw.thread_parent_id,
                )
            )
        messages.sort(key=lambda m: m.timestamp)
        return messages

    def _commit_exact(
        self, batches: list[ConversationBatch], auth: AuthInfo
    ) -> int:
        """Insert one transaction per conversation. Caller holds the lock."""
        total = sum(len(b.messages) for b in batches)
        self._emit(SyncPhase.INDEXING_EXACT, 0, total)
        processed = 0
        inserted = 0
        for batch in batches:
            inserted += self.store.insert_batch(self._normalize(batch, auth))
            processed += len(batch.messages)
            self._emit(SyncPhase.INDEXING_EXACT, processed, total, f"#{batch.name}")
        logger.info("Stored %d new messages (%d fetched)", inserted, total)
        return inserted

    def _load_fuzzy(self) -> FuzzyIndex:
        if self.fuzzy_path.exists():
            return FuzzyIndex.load(self.fuzzy_path)

        logger.warning("Fuzzy index missing; rebuilding from the message store")
        fuzzy = FuzzyIndex()
        for chunk in self.store.iter_all(FUZZY_BATCH_SIZE):
            fuzzy.add_batch(chunk)
        return fuzzy

    def _saved_cursors(self) -> dict[str, str]:
        """Cursors as last committed. Caller holds the lock."""
        try:
            saved = self.registry.load()
        except SnapshotCorruptError as e:
            logger.warning("Discarding unreadable stats: %s", e)
            return {}
        return saved.conversation_cursors if saved else {}

    def _finish(self, auth: AuthInfo, cursors: dict[str, str]) -> CorpusStats:
        counts = self.store.corpus_counts()
        stats = CorpusStats(
            total_messages=counts.total_messages,
            total_conversations=counts.total_conversations,
            total_senders=counts.total_senders,
            oldest_timestamp=counts.oldest_timestamp,
            newest_timestamp=counts.newest_timestamp,
            indexed_at=datetime.now(),
            workspace_id=auth.workspace_id,
            workspace_name=auth.workspace_name,
            conversation_cursors=cursors,
        )
        self.registry.save(stats)
        self._emit(SyncPhase.DONE, stats.total_messages, stats.total_messages)
        return stats


def _observed(batches: list[ConversationBatch]) -> dict[str, str]:
    """Newest external_id per conversation; empty conversations omitted."""
    cursors: dict[str, str] = {}
    for batch in batches:
        newest = batch.newest_external_id
        if newest is not None:
            cursors[batch.conversation.id] = newest
    return cursors

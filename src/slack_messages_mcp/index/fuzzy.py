"""Typo-tolerant inverted index over message text, sender and conversation.

Provides:
- tokenize(): Lowercase, split on non-alphanumeric runs, drop empties
- bounded_edit_distance(): Levenshtein distance with early exit
- FuzzyIndex: Incremental inverted index with ranked fuzzy search
- FuzzyIndex.snapshot() / FuzzyIndex.restore(): Versioned JSON form

Matching rules for a query token against an indexed token:
- exact match
- prefix match in either direction
- edit distance <= floor(fuzziness * len(query_token))

Each matching (query token, field, indexed token) contributes
``term_frequency * field_boost * match_weight`` to the document score.
Ties are broken by the strongest field boost that matched, then by
insertion order.

Snapshot layout (version 1)::

    {
      "format": "slack-messages-fuzzy-index",
      "version": 1,
      "fields": ["text", "sender", "conversation_name"],
      "documents": [[id, external_id, text, sender, conversation_id,
                     conversation_name, timestamp, is_self_authored,
                     parent_thread_id], ...],
      "postings": {"text": {"token": [[ordinal, tf], ...]}, ...}
    }

Documents are stored in insertion order; postings refer to them by
position in that list.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import get_field_boosts, get_fuzziness
from ..exceptions import SnapshotCorruptError
from .models import Message

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "slack-messages-fuzzy-index"
SNAPSHOT_VERSION = 1

FIELDS = ("text", "sender", "conversation_name")

# Relative weight of each kind of token match
EXACT_WEIGHT = 1.0
PREFIX_WEIGHT = 0.375
FUZZY_WEIGHT = 0.45

# An indexed token must be at least this long to count as a prefix of a
# longer query token ("a" would otherwise match every query starting with a)
MIN_REVERSE_PREFIX = 2

_SPLIT = re.compile(r"[\W_]+")


def tokenize(text: str) -> list[str]:
    """Lowercase ``text`` and split it on non-alphanumeric boundaries."""
    if not text:
        return []
    return [t for t in _SPLIT.split(text.lower()) if t]


def bounded_edit_distance(a: str, b: str, max_distance: int) -> int:
    """
    Levenshtein distance between ``a`` and ``b``, capped at max_distance + 1.

    Stops as soon as every cell of the current row exceeds the bound, so
    distant pairs are rejected after a few characters.
    """
    if abs(len(a) - len(b)) > max_distance:
        return max_distance + 1
    if len(a) > len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i] + [0] * len(b)
        row_min = i
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            current[j] = min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            )
            if current[j] < row_min:
                row_min = current[j]
        if row_min > max_distance:
            return max_distance + 1
        previous = current

    return min(previous[-1], max_distance + 1)


def match_weight(query_token: str, index_token: str, max_distance: int) -> float:
    """Weight of ``index_token`` as a match for ``query_token`` (0 = none)."""
    if index_token == query_token:
        return EXACT_WEIGHT

    weight = 0.0
    # Reverse prefixes are narrowed to indexed tokens of 2+ chars on purpose
    if index_token.startswith(query_token) or (
        len(index_token) >= MIN_REVERSE_PREFIX
        and query_token.startswith(index_token)
    ):
        weight = PREFIX_WEIGHT

    if max_distance > 0 and (
        bounded_edit_distance(query_token, index_token, max_distance)
        <= max_distance
    ):
        weight = max(weight, FUZZY_WEIGHT)

    return weight


def _field_value(message: Message, name: str) -> str:
    if name == "text":
        return message.text
    if name == "sender":
        return message.sender
    return message.conversation_name


@dataclass
class FuzzyMatch:
    """A ranked fuzzy search result."""

    message: Message
    score: float
    terms: list[str] = field(default_factory=list)


class FuzzyIndex:
    """
    Inverted index with one posting list per field.

    Documents are Messages that already carry a store id. Adding a
    document whose id is already indexed is a no-op, so replaying a batch
    is safe.
    """

    def __init__(
        self,
        fuzziness: float | None = None,
        boosts: dict[str, float] | None = None,
    ):
        self.fuzziness = get_fuzziness() if fuzziness is None else fuzziness
        self.boosts = dict(get_field_boosts() if boosts is None else boosts)
        self._docs: list[Message] = []
        self._ordinals: dict[int, int] = {}
        # field -> token -> {ordinal: term frequency}
        self._postings: dict[str, dict[str, dict[int, int]]] = {
            name: {} for name in FIELDS
        }

    def __len__(self) -> int:
        return len(self._docs)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._ordinals

    @property
    def document_count(self) -> int:
        return len(self._docs)

    def vocabulary(self, field_name: str) -> set[str]:
        """Distinct tokens indexed for one field."""
        return set(self._postings[field_name])

    # ─────────────────────────────────────────────────────────────────
    # Indexing
    # ─────────────────────────────────────────────────────────────────

    def add(self, message: Message) -> bool:
        """
        Index one message.

        Returns:
            True if added, False if its id was already indexed

        Raises:
            ValueError: If the message has no store id
        """
        if message.id is None:
            raise ValueError(
                f"Message {message.external_id} has no store id; "
                "insert it into the message store first"
            )
        if message.id in self._ordinals:
            return False

        ordinal = len(self._docs)
        self._docs.append(message)
        self._ordinals[message.id] = ordinal

        for name in FIELDS:
            postings = self._postings[name]
            for token, tf in Counter(tokenize(_field_value(message, name))).items():
                postings.setdefault(token, {})[ordinal] = tf

        return True

    def add_batch(self, messages: Iterable[Message]) -> int:
        """
        Merge messages into the existing postings.

        Returns:
            Number of newly indexed messages
        """
        added = sum(1 for message in messages if self.add(message))
        logger.debug("Fuzzy index: +%d documents (%d total)", added, len(self))
        return added

    # ─────────────────────────────────────────────────────────────────
    # Search
    # ─────────────────────────────────────────────────────────────────

    def _expand(
        self, query_token: str, field_name: str, max_distance: int
    ) -> list[tuple[str, float]]:
        """Indexed tokens in one field matching ``query_token``."""
        matches: list[tuple[str, float]] = []
        for token in self._postings[field_name]:
            weight = match_weight(query_token, token, max_distance)
            if weight > 0:
                matches.append((token, weight))
        return matches

    def search(
        self,
        query: str,
        limit: int = 20,
        *,
        predicate: Callable[[Message], bool] | None = None,
        fuzziness: float | None = None,
        boosts: dict[str, float] | None = None,
    ) -> list[FuzzyMatch]:
        """
        Ranked fuzzy search.

        Args:
            query: Free text
            limit: Maximum results
            predicate: Optional filter evaluated against each candidate's
                stored fields before it counts toward ``limit``
            fuzziness: Override the index fuzziness ratio
            boosts: Override per-field boosts

        Returns:
            Matches ordered by score (highest first)
        """
        terms = list(dict.fromkeys(tokenize(query)))
        if not terms or limit <= 0 or not self._docs:
            return []

        ratio = self.fuzziness if fuzziness is None else fuzziness
        field_boosts = self.boosts if boosts is None else boosts

        scores: dict[int, float] = {}
        best_boost: dict[int, float] = {}
        matched: dict[int, set[str]] = {}

        for term in terms:
            max_distance = math.floor(ratio * len(term))
            for field_name in FIELDS:
                boost = field_boosts.get(field_name, 0.0)
                if boost <= 0:
                    continue
                postings = self._postings[field_name]
                for token, weight in self._expand(term, field_name, max_distance):
                    for ordinal, tf in postings[token].items():
                        scores[ordinal] = (
                            scores.get(ordinal, 0.0) + tf * boost * weight
                        )
                        if boost > best_boost.get(ordinal, 0.0):
                            best_boost[ordinal] = boost
                        matched.setdefault(ordinal, set()).add(token)

        ranked = sorted(
            scores,
            key=lambda o: (-scores[o], -best_boost[o], o),
        )

        results: list[FuzzyMatch] = []
        for ordinal in ranked:
            message = self._docs[ordinal]
            if predicate is not None and not predicate(message):
                continue
            results.append(
                FuzzyMatch(
                    message=message,
                    score=round(scores[ordinal], 3),
                    terms=sorted(matched[ordinal]),
                )
            )
            if len(results) >= limit:
                break

        return results

    # ─────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────

    def snapshot(self) -> bytes:
        """Serialize documents and postings to the versioned JSON form."""
        payload = {
            "format": SNAPSHOT_FORMAT,
            "version": SNAPSHOT_VERSION,
            "fields": list(FIELDS),
            "documents": [
                [
                    m.id,
                    m.external_id,
                    m.text,
                    m.sender,
                    m.conversation_id,
                    m.conversation_name,
                    m.timestamp,
                    m.is_self_authored,
                    m.parent_thread_id,
                ]
                for m in self._docs
            ],
            "postings": {
                name: {
                    token: [[ordinal, tf] for ordinal, tf in docs.items()]
                    for token, docs in self._postings[name].items()
                }
                for name in FIELDS
            },
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def restore(
        cls,
        data: bytes,
        fuzziness: float | None = None,
        boosts: dict[str, float] | None = None,
    ) -> FuzzyIndex:
        """
        Rebuild an index from snapshot bytes.

        Raises:
            SnapshotCorruptError: If the bytes are not a readable snapshot
        """
        try:
            payload = json.loads(data)
        except ValueError as e:
            raise SnapshotCorruptError(f"Fuzzy index is not valid JSON: {e}") from e

        if not isinstance(payload, dict) or payload.get("format") != SNAPSHOT_FORMAT:
            raise SnapshotCorruptError("Fuzzy index has an unknown format")
        version = payload.get("version")
        if version != SNAPSHOT_VERSION:
            raise SnapshotCorruptError(
                f"Fuzzy index version {version!r} is not supported "
                f"(expected {SNAPSHOT_VERSION})"
            )
        if payload.get("fields") != list(FIELDS):
            raise SnapshotCorruptError("Fuzzy index fields do not match")

        index = cls(fuzziness=fuzziness, boosts=boosts)
        try:
            for ordinal, doc in enumerate(payload["documents"]):
                (
                    doc_id,
                    external_id,
                    text,
                    sender,
                    conversation_id,
                    conversation_name,
                    timestamp,
                    is_self,
                    parent,
                ) = doc
                message = Message(
                    id=int(doc_id),
                    external_id=str(external_id),
                    text=str(text),
                    sender=str(sender),
                    conversation_id=str(conversation_id),
                    conversation_name=str(conversation_name),
                    timestamp=int(timestamp),
                    is_self_authored=bool(is_self),
                    parent_thread_id=parent,
                )
                index._docs.append(message)
                index._ordinals[message.id] = ordinal

            doc_count = len(index._docs)
            for name in FIELDS:
                target = index._postings[name]
                for token, entries in payload["postings"][name].items():
                    docs: dict[int, int] = {}
                    for ordinal, tf in entries:
                        ordinal = int(ordinal)
                        if not 0 <= ordinal < doc_count:
                            raise IndexError(f"posting ordinal {ordinal}")
                        docs[ordinal] = int(tf)
                    target[token] = docs
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise SnapshotCorruptError(f"Fuzzy index is damaged: {e}") from e

        logger.debug("Restored fuzzy index with %d documents", len(index))
        return index

    def save(self, path: Path) -> None:
        """Write the snapshot atomically (temp file + rename)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(self.snapshot())
        try:
            os.chmod(tmp_path, 0o600)
        except OSError as e:
            logger.warning("Could not set secure permissions on %s: %s", tmp_path, e)
        os.replace(tmp_path, path)

    @classmethod
    def load(
        cls,
        path: Path,
        fuzziness: float | None = None,
        boosts: dict[str, float] | None = None,
    ) -> FuzzyIndex:
        """Load a snapshot file written by save()."""
        return cls.restore(path.read_bytes(), fuzziness=fuzziness, boosts=boosts)

"""Durable cursor and corpus-stats record (``stats.json``)."""

from __future__ import annotations

import json
import logging
import os
from typing import TYPE_CHECKING

from ..exceptions import SnapshotCorruptError
from .models import CorpusStats

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


class StatsRegistry:
    """Single JSON record holding CorpusStats and the cursor map."""

    def __init__(self, path: Path):
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> CorpusStats | None:
        """
        Read the last saved stats.

        Returns:
            CorpusStats, or None if nothing has been saved yet

        Raises:
            SnapshotCorruptError: If the file exists but cannot be parsed
        """
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return CorpusStats.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SnapshotCorruptError(
                f"Stats file {self.path} is damaged: {e}"
            ) from e

    def save(self, stats: CorpusStats) -> None:
        """Overwrite the record atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(
            json.dumps(stats.to_dict(), indent=2), encoding="utf-8"
        )
        os.replace(tmp_path, self.path)
        logger.debug(
            "Saved stats: %d messages, %d cursors",
            stats.total_messages,
            len(stats.conversation_cursors),
        )

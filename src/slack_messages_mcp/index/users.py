"""User ID → display name resolution cache (``users.json``).

Slack messages carry raw user IDs (e.g., "U024BE7LH"); the index stores
resolved names so sender search and contact listings read naturally.

Usage:
    users = UserDirectory(path)
    users.load_from_slack(client.list_users())
    users.save()
    name = users.resolve("U024BE7LH")   # → "Alice"
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import TYPE_CHECKING

from ..exceptions import SnapshotCorruptError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from ..slack import SlackUser

logger = logging.getLogger(__name__)


def resolve_user_name(user: SlackUser) -> str:
    """First non-empty of display name, real name, username, id."""
    return user.display_name or user.real_name or user.name or user.id


class UserDirectory:
    """Thread-safe mapping between Slack user IDs and display names.

    Refreshed from the API on every full sync; incremental syncs only
    read the cached copy.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._names: dict[str, str] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)

    def resolve(self, user_id: str) -> str:
        """Display name for ``user_id``, or the ID itself if unknown."""
        with self._lock:
            return self._names.get(user_id, user_id)

    def load_from_slack(self, users: Iterable[SlackUser]) -> None:
        """Replace the mapping with freshly listed users."""
        names = {user.id: resolve_user_name(user) for user in users if user.id}
        with self._lock:
            self._names = names
        logger.debug("UserDirectory loaded: %d users", len(names))

    def load(self) -> bool:
        """
        Load the cached mapping from disk.

        Returns:
            True if a cache file was read

        Raises:
            SnapshotCorruptError: If the cache file is unreadable
        """
        if self.path is None or not self.path.exists():
            return False
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            names = {str(k): str(v) for k, v in data.items()}
        except (ValueError, AttributeError) as e:
            raise SnapshotCorruptError(
                f"User cache {self.path} is damaged: {e}"
            ) from e
        with self._lock:
            self._names = names
        logger.debug("UserDirectory read %d cached users", len(self._names))
        return True

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            payload = dict(self._names)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

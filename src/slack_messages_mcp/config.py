"""Configuration for slack-messages-mcp.

Settings come from environment variables; registered workspaces (and their
tokens) live in ``<home>/config.json``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Default data root
DEFAULT_HOME = Path.home() / ".slack-messages"

DEFAULT_FUZZINESS = 0.2
DEFAULT_FETCH_WORKERS = 4
DEFAULT_FILTER_OVERFETCH = 20

DEFAULT_FIELD_BOOSTS = {
    "text": 2.0,
    "sender": 1.5,
    "conversation_name": 1.0,
}


@dataclass
class WorkspaceConfig:
    """A registered Slack workspace."""

    id: str
    name: str
    token: str


def get_home() -> Path:
    """
    Get the data root directory.

    Set SLACK_MESSAGES_HOME to customize the location.
    Defaults to ~/.slack-messages

    Returns:
        Path to the data root.
    """
    env_path = os.environ.get("SLACK_MESSAGES_HOME")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_HOME


def get_config_path() -> Path:
    """Path to the workspace registry file."""
    return get_home() / "config.json"


def get_workspace_dir(workspace_id: str) -> Path:
    """
    Get the data directory for one workspace.

    Every persisted artifact (store, fuzzy snapshot, stats, user cache)
    lives under this directory.

    Args:
        workspace_id: Slack team ID

    Returns:
        Path like ~/.slack-messages/workspaces/T0123
    """
    return get_home() / "workspaces" / workspace_id


# ========== Search Tuning ==========


def get_fuzziness() -> float:
    """
    Get the fuzzy matching ratio.

    A query token of length n tolerates floor(fuzziness * n) edits.
    Set SLACK_MESSAGES_FUZZINESS to customize. Defaults to 0.2.
    """
    raw = os.environ.get("SLACK_MESSAGES_FUZZINESS")
    if not raw:
        return DEFAULT_FUZZINESS
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid SLACK_MESSAGES_FUZZINESS=%r", raw)
        return DEFAULT_FUZZINESS
    return max(0.0, value)


def get_field_boosts() -> dict[str, float]:
    """
    Get per-field relevance boosts.

    Set SLACK_MESSAGES_BOOSTS to a comma-separated list such as
    ``text=2,sender=1.5,conversation_name=1``. Unknown fields and
    malformed entries are ignored.

    Returns:
        Dict mapping field name to boost.
    """
    boosts = dict(DEFAULT_FIELD_BOOSTS)
    raw = os.environ.get("SLACK_MESSAGES_BOOSTS")
    if not raw:
        return boosts

    for part in raw.split(","):
        name, sep, value = part.partition("=")
        name = name.strip()
        if not sep or name not in boosts:
            continue
        try:
            boosts[name] = float(value)
        except ValueError:
            logger.warning("Ignoring invalid boost %r", part)
    return boosts


def get_fetch_workers() -> int:
    """
    Get the number of conversations fetched concurrently during sync.

    Set SLACK_MESSAGES_FETCH_WORKERS to customize. Defaults to 4.
    """
    return _positive_int("SLACK_MESSAGES_FETCH_WORKERS", DEFAULT_FETCH_WORKERS)


def get_filter_overfetch() -> int:
    """
    Get the over-fetch multiplier used when search filters are active.

    Set SLACK_MESSAGES_FILTER_OVERFETCH to customize. Defaults to 20.
    """
    return _positive_int(
        "SLACK_MESSAGES_FILTER_OVERFETCH", DEFAULT_FILTER_OVERFETCH
    )


def _positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default
    return max(1, value)


# ========== Workspace Registry ==========


def load_config() -> list[WorkspaceConfig]:
    """Load all registered workspaces (empty list if none)."""
    path = get_config_path()
    if not path.exists():
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    return [
        WorkspaceConfig(id=w["id"], name=w["name"], token=w["token"])
        for w in data.get("workspaces", [])
    ]


def save_config(workspaces: list[WorkspaceConfig]) -> None:
    """
    Persist the workspace registry.

    Security:
        The file holds API tokens, so it is written with 0600 permissions.
    """
    path = get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"workspaces": [asdict(w) for w in workspaces]}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        logger.warning("Could not set secure permissions on %s: %s", path, e)


def add_workspace(workspace: WorkspaceConfig) -> None:
    """Register a workspace, replacing any entry with the same ID."""
    workspaces = load_config()
    for i, existing in enumerate(workspaces):
        if existing.id == workspace.id:
            workspaces[i] = workspace
            break
    else:
        workspaces.append(workspace)
    save_config(workspaces)


def remove_workspace(workspace_id: str) -> bool:
    """Remove a workspace. Returns True if something was removed."""
    workspaces = load_config()
    remaining = [w for w in workspaces if w.id != workspace_id]
    if len(remaining) == len(workspaces):
        return False
    save_config(remaining)
    return True


def get_workspace(workspace_id: str) -> WorkspaceConfig | None:
    return next((w for w in load_config() if w.id == workspace_id), None)


def get_default_workspace() -> WorkspaceConfig | None:
    """The first registered workspace, or None."""
    workspaces = load_config()
    return workspaces[0] if workspaces else None


def list_workspaces() -> list[WorkspaceConfig]:
    return load_config()

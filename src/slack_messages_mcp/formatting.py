"""Plain-text rendering and argument parsing shared by the CLI and server."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .index.models import CorpusStats, Message, SearchHit
    from .index.sync import SyncProgress

RULE = "━" * 60
MAX_SENDER_WIDTH = 20

PHASE_LABELS = {
    "authenticating": "Authenticating",
    "resolving-users": "Fetching users",
    "resolving-conversations": "Fetching channels",
    "fetching-messages": "Fetching messages",
    "fetching-threads": "Fetching threads",
    "indexing-exact": "Building search index",
    "indexing-fuzzy": "Building fuzzy index",
    "done": "Done",
}


def parse_date(value: str | None) -> datetime | None:
    """
    Parse a YYYY-MM-DD (or full ISO 8601) date argument.

    Raises:
        ValueError: If the value is not a valid date
    """
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValueError(
            f"Invalid date {value!r}; expected YYYY-MM-DD"
        ) from None


def format_date(timestamp: int) -> str:
    """Unix seconds → 'Tue, Mar 5, 2024 at 2:07 PM' (local time)."""
    dt = datetime.fromtimestamp(timestamp)
    hour = dt.hour % 12 or 12
    meridiem = "AM" if dt.hour < 12 else "PM"
    return f"{dt:%a, %b} {dt.day}, {dt.year} at {hour}:{dt:%M} {meridiem}"


def format_day(timestamp: int | None) -> str:
    if timestamp is None:
        return "-"
    dt = datetime.fromtimestamp(timestamp)
    return f"{dt:%b} {dt.day}, {dt.year}"


def format_sender(message: Message) -> str:
    if message.is_self_authored:
        return "[You]"
    sender = message.sender or "unknown"
    if len(sender) > MAX_SENDER_WIDTH:
        sender = sender[: MAX_SENDER_WIDTH - 3] + "..."
    return f"[{sender}]"


def format_message(message: Message, is_match: bool = False) -> str:
    prefix = "▶" if is_match else " "
    return f"{prefix} {format_sender(message)} {message.text}"


def format_search_hit(hit: SearchHit) -> str:
    """One result block: header, context before, the hit, context after."""
    message = hit.message
    channel = message.conversation_name or "Unknown Channel"
    lines = [
        RULE,
        f"Channel: #{channel}  │  {format_date(message.timestamp)}",
        RULE,
    ]
    lines.extend(format_message(m) for m in hit.before)
    lines.append(format_message(message, is_match=True))
    lines.extend(format_message(m) for m in hit.after)
    lines.append("")
    return "\n".join(lines)


def format_no_results(query: str) -> str:
    return f'No messages found matching "{query}"'


def format_stats(stats: CorpusStats) -> str:
    lines = ["Index Statistics", "─" * 40]
    if stats.workspace_name:
        lines.append(f"Workspace:  {stats.workspace_name}")
    lines.append(f"Messages:   {stats.total_messages:,}")
    lines.append(f"Channels:   {stats.total_conversations:,}")
    lines.append(f"Users:      {stats.total_senders:,}")
    lines.append(f"Indexed at: {stats.indexed_at:%Y-%m-%d %H:%M:%S}")
    lines.append(
        f"Date range: {format_day(stats.oldest_timestamp)} - "
        f"{format_day(stats.newest_timestamp)}"
    )
    return "\n".join(lines)


def progress_bar(current: int, total: int, width: int = 20) -> str:
    pct = min(current / total, 1.0) if total > 0 else 0.0
    filled = round(width * pct)
    return "█" * filled + "░" * (width - filled)


def format_progress(progress: SyncProgress) -> str:
    """'Fetching messages: ████░░ 40% (4/10)' or 'Authenticating...'."""
    phase = str(getattr(progress.phase, "value", progress.phase))
    label = PHASE_LABELS.get(phase, phase)
    if progress.total <= 0:
        return f"{label}..."
    pct = round(min(progress.current / progress.total, 1.0) * 100)
    return (
        f"{label}: {progress_bar(progress.current, progress.total)} {pct}% "
        f"({progress.current:,}/{progress.total:,})"
    )

"""Command-line interface for slack-messages-mcp.

Provides commands for:
- auth / workspaces / remove: Manage registered workspaces
- index: Build (or --update) the local search index
- search / from / recent / contacts / conversations / thread: Query it
- stats: Show index statistics
- serve: Run the MCP server (default)

Usage:
    slack-messages                      # Run MCP server (default)
    slack-messages auth xoxp-...        # Register a workspace token
    slack-messages index                # Full index
    slack-messages index --update       # Only fetch new messages
    slack-messages search "deadlne" --from alice
"""

import logging
import shutil
import sys
import time
from typing import Annotated

import cyclopts

from .config import (
    WorkspaceConfig,
    add_workspace,
    get_workspace_dir,
    list_workspaces,
    remove_workspace,
)
from .exceptions import (
    IndexNotFoundError,
    NotConfiguredError,
    SlackMessagesError,
)
from .formatting import (
    format_date,
    format_message,
    format_no_results,
    format_progress,
    format_search_hit,
    format_stats,
    parse_date,
)

app = cyclopts.App(
    name="slack-messages",
    help="Fast, typo-tolerant search over your Slack messages (CLI + MCP).",
)

Verbose = Annotated[
    bool,
    cyclopts.Parameter(name=["--verbose", "-v"], help="Enable debug logging"),
]
Limit = Annotated[
    int,
    cyclopts.Parameter(name=["--limit", "-l"], help="Maximum number of results"),
]
After = Annotated[
    str | None,
    cyclopts.Parameter(
        name=["--after", "-a"],
        help="Show only messages after this date (YYYY-MM-DD)",
    ),
]
Context = Annotated[
    int,
    cyclopts.Parameter(
        name=["--context", "-c"],
        help="Number of messages to show before/after each result",
    ),
]


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _format_time(seconds: float) -> str:
    """Format duration for display."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    return f"{minutes}m {secs:.1f}s"


def _fail(message: str) -> None:
    print(f"✗ {message}", file=sys.stderr)
    sys.exit(1)


def _run_query(operation) -> None:
    """Run ``operation(manager)`` against a ready index, reporting errors."""
    from .index import IndexStatus, open_index

    try:
        with open_index() as manager:
            status = manager.status()
            if status is IndexStatus.NOT_CONFIGURED:
                _fail(str(NotConfiguredError()))
            if status is IndexStatus.NO_INDEX:
                _fail(str(IndexNotFoundError()))
            operation(manager)
    except (SlackMessagesError, ValueError) as e:
        _fail(str(e))


def _print_hits(hits, empty_message: str) -> None:
    if not hits:
        print(empty_message)
        return
    for hit in hits:
        print(format_search_hit(hit))
    print(f"Found {len(hits)} result{'s' if len(hits) != 1 else ''}")


# ========== Workspaces ==========


@app.command
def auth(token: str, verbose: Verbose = False) -> None:
    """
    Register a Slack workspace using a user token (xoxp-...).

    The token is verified with Slack and stored in
    ~/.slack-messages/config.json with owner-only permissions.
    """
    _configure_logging(verbose)
    from .slack import SlackClient

    try:
        info = SlackClient(token).authenticate()
    except SlackMessagesError as e:
        _fail(str(e))
        return

    add_workspace(
        WorkspaceConfig(id=info.workspace_id, name=info.workspace_name, token=token)
    )
    print(f"✓ Added workspace {info.workspace_name} ({info.workspace_id})")
    print("Run 'slack-messages index' to build the search index.")


@app.command
def workspaces() -> None:
    """List registered workspaces (the first one is the default)."""
    registered = list_workspaces()
    if not registered:
        print("No workspaces configured.")
        print("Run 'slack-messages auth <token>' to add one.")
        return
    for i, workspace in enumerate(registered):
        marker = " (default)" if i == 0 else ""
        print(f"{workspace.name}  {workspace.id}{marker}")


@app.command
def remove(
    workspace_id: str,
    keep_data: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--keep-data"], help="Keep the indexed messages on disk"
        ),
    ] = False,
) -> None:
    """Unregister a workspace and delete its local index."""
    if not remove_workspace(workspace_id):
        _fail(f"Workspace {workspace_id} not found")
    data_dir = get_workspace_dir(workspace_id)
    if not keep_data and data_dir.exists():
        shutil.rmtree(data_dir)
    print(f"✓ Removed workspace {workspace_id}")


# ========== Indexing ==========


@app.command
def index(
    update: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--update", "-u"],
            help="Incremental update (only index new messages)",
        ),
    ] = False,
    quiet: Annotated[
        bool,
        cyclopts.Parameter(name=["--quiet", "-q"], help="Suppress progress output"),
    ] = False,
    verbose: Verbose = False,
) -> None:
    """
    Index messages from the default Slack workspace.

    A full index fetches every channel and DM you are a member of,
    including thread replies. With --update, only messages newer than the
    last index are fetched (falls back to a full index if none exists).
    """
    _configure_logging(verbose)
    from .index import IndexStatus, SyncStatus, open_index

    last_phase = None

    def progress(event) -> None:
        nonlocal last_phase
        if last_phase is not None and event.phase != last_phase:
            print()
        last_phase = event.phase
        print(f"\r{format_progress(event)}", end="", flush=True)

    start = time.time()
    try:
        with open_index() as manager:
            if manager.status() is IndexStatus.NOT_CONFIGURED:
                _fail(str(NotConfiguredError()))
            callback = None if quiet else progress
            if update:
                outcome = manager.update_index(callback, fallback_to_build=True)
                stats = outcome.stats
                verb = "Built" if outcome.status is SyncStatus.BUILT else "Updated"
            else:
                stats = manager.build_index(callback)
                verb = "Built"
    except SlackMessagesError as e:
        if last_phase is not None:
            print()
        _fail(str(e))
        return

    if last_phase is not None:
        print()
    elapsed = time.time() - start
    print(f"✓ {verb} index in {_format_time(elapsed)}")
    if stats is not None:
        print()
        print(format_stats(stats))


# ========== Queries ==========


@app.command
def search(
    query: str,
    sender: Annotated[
        str | None,
        cyclopts.Parameter(name=["--from", "-f"], help="Filter by sender name"),
    ] = None,
    after: After = None,
    limit: Limit = 10,
    context: Context = 2,
    refresh: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--refresh", "-r"], help="Fetch new messages before searching"
        ),
    ] = False,
    verbose: Verbose = False,
) -> None:
    """Search messages (fuzzy: typos and partial words match)."""
    _configure_logging(verbose)

    def run(manager) -> None:
        hits = manager.search(
            query,
            sender=sender,
            after=parse_date(after),
            limit=limit,
            context=context,
            refresh_first=refresh,
        )
        _print_hits(hits, format_no_results(query))

    _run_query(run)


@app.command(name="from")
def from_sender(
    sender: str,
    after: After = None,
    limit: Limit = 20,
    context: Context = 2,
    verbose: Verbose = False,
) -> None:
    """Show recent messages sent by a person (name substring)."""
    _configure_logging(verbose)

    def run(manager) -> None:
        hits = manager.search(
            None,
            sender=sender,
            after=parse_date(after),
            limit=limit,
            context=context,
        )
        _print_hits(hits, f'No messages found from "{sender}"')

    _run_query(run)


@app.command
def recent(limit: Limit = 20, verbose: Verbose = False) -> None:
    """Show the most recent messages across all conversations."""
    _configure_logging(verbose)

    def run(manager) -> None:
        messages = manager.recent(limit)
        if not messages:
            print("No messages indexed.")
        for message in messages:
            channel = message.conversation_name or "Unknown Channel"
            print(f"{format_date(message.timestamp)}  #{channel}")
            print(format_message(message))

    _run_query(run)


@app.command
def contacts(limit: Limit = 20, verbose: Verbose = False) -> None:
    """List people by most recent message."""
    _configure_logging(verbose)

    def run(manager) -> None:
        people = manager.contacts(limit)
        if not people:
            print("No contacts found.")
        for person in people:
            print(
                f"{person.name}  ({person.message_count:,} messages, "
                f"last {format_date(person.last_timestamp)})"
            )
            if person.last_text:
                print(f"    {person.last_text[:80]}")

    _run_query(run)


@app.command
def conversations(limit: Limit = 20, verbose: Verbose = False) -> None:
    """List channels and DMs by most recent activity."""
    _configure_logging(verbose)

    def run(manager) -> None:
        found = manager.conversations(limit)
        if not found:
            print("No conversations found.")
        for conv in found:
            print(
                f"#{conv.conversation_name}  ({conv.message_count:,} messages, "
                f"last {format_date(conv.last_timestamp)})"
            )
            if conv.last_text:
                print(f"    {conv.last_text[:80]}")

    _run_query(run)


@app.command
def thread(
    channel: str,
    after: After = None,
    limit: Limit = 50,
    verbose: Verbose = False,
) -> None:
    """Show a channel or DM in chronological order."""
    _configure_logging(verbose)

    def run(manager) -> None:
        messages = manager.thread(channel, after=parse_date(after), limit=limit)
        if not messages:
            print(f'No messages found in "{channel}"')
            return
        for message in messages:
            print(f"{format_date(message.timestamp)}  {format_message(message)}")

    _run_query(run)


@app.command
def stats() -> None:
    """Show index statistics."""
    _run_query(lambda manager: print(format_stats(manager.get_stats())))


# ========== Server ==========


def _run_serve() -> None:
    from .server import mcp

    mcp.run()


@app.command
def serve(verbose: Verbose = False) -> None:
    """
    Run the MCP server.

    This is the default command when no subcommand is specified.
    The server exposes search tools over the local index; build it first
    with 'slack-messages index'.
    """
    _configure_logging(verbose)
    _run_serve()


@app.default
def default_handler(verbose: Verbose = False) -> None:
    """Run the MCP server (default when no command specified)."""
    _configure_logging(verbose)
    _run_serve()


def main() -> None:
    """Entry point for the CLI."""
    app()

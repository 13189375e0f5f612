"""Slack Messages MCP - Fast, typo-tolerant search over Slack messages.

Features:
- Local SQLite store plus a fuzzy inverted index (typos and prefixes match)
- Incremental sync from per-conversation cursors
- Search results with surrounding conversation context

Usage:
    slack-messages                  # Run MCP server (default)
    slack-messages auth <token>     # Register a workspace
    slack-messages index            # Build the search index
    slack-messages index --update   # Fetch only new messages
    slack-messages search <query>   # Search from the terminal
"""

from .cli import main
from .server import mcp

__all__ = ["main", "mcp"]

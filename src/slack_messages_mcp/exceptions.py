"""Error taxonomy for slack-messages-mcp.

Only conversation-level failures are absorbed locally (the sync skips the
conversation). Everything else propagates to the caller with a message
naming the step that is missing.
"""


class SlackMessagesError(Exception):
    """Base class for all slack-messages-mcp errors."""


class AuthError(SlackMessagesError):
    """Raised when the workspace token is invalid or revoked."""

    def __init__(self, message: str, error_code: str = ""):
        super().__init__(message)
        self.error_code = error_code


class NotConfiguredError(SlackMessagesError):
    """Raised when no Slack workspace has been registered."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "No Slack workspace configured. "
            "Run `slack-messages auth <token>` to add one."
        )


class IndexNotFoundError(SlackMessagesError):
    """Raised when a read is attempted before any successful build."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "Index not found. Run `slack-messages index` first to build "
            "the search index."
        )


class ConversationAccessError(SlackMessagesError):
    """Raised when a single conversation cannot be fetched."""

    def __init__(self, conversation_id: str, message: str):
        super().__init__(f"{conversation_id}: {message}")
        self.conversation_id = conversation_id


class SnapshotCorruptError(SlackMessagesError):
    """Raised when persisted index state cannot be parsed."""

    def __init__(self, message: str):
        super().__init__(
            f"{message}\nRun `slack-messages index` to rebuild the index."
        )

"""Slack Web API adapter.

Provides:
- SlackClient.authenticate(): Verify the token (auth.test)
- SlackClient.list_users(): Active human users
- SlackClient.list_conversations(): Conversations the token owner can read
- SlackClient.fetch_history(): Paginated channel history since a cursor
- SlackClient.fetch_thread_replies(): Replies to one thread parent

Pagination uses slack_sdk's response iteration (``next_cursor``), and
HTTP 429 responses are retried by the SDK's rate-limit handler. Records
are normalized here so the ingestion pipeline never sees raw API dicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from slack_sdk.http_retry.builtin_handlers import RateLimitErrorRetryHandler

from .exceptions import AuthError, ConversationAccessError, SlackMessagesError

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

PAGE_SIZE = 200

CONVERSATION_TYPES = "public_channel,private_channel,im,mpim"

# System events that carry no user-authored text
SKIPPED_SUBTYPES = frozenset(
    {
        "channel_join",
        "channel_leave",
        "channel_topic",
        "channel_purpose",
        "bot_add",
        "bot_remove",
    }
)

AUTH_ERROR_CODES = frozenset(
    {
        "invalid_auth",
        "not_authed",
        "account_inactive",
        "token_revoked",
        "token_expired",
    }
)


@dataclass
class AuthInfo:
    user_id: str
    workspace_id: str
    workspace_name: str


@dataclass
class SlackUser:
    id: str
    name: str = ""
    real_name: str = ""
    display_name: str = ""
    is_bot: bool = False
    is_deleted: bool = False


@dataclass
class SlackConversation:
    id: str
    name: str
    is_direct_message: bool = False
    is_private: bool = False
    counterpart_user_id: str | None = None
    is_member: bool = True


@dataclass
class SlackMessage:
    external_id: str
    user_id: str
    text: str
    conversation_id: str
    thread_parent_id: str | None = None
    reply_count: int = 0


def _error_code(e: SlackApiError) -> str:
    try:
        return str(e.response.get("error", "")) if e.response else ""
    except AttributeError:
        return ""


def _is_message(raw: dict) -> bool:
    """True for user-authored messages with visible text."""
    if raw.get("type", "message") != "message" or not raw.get("ts"):
        return False
    if not (raw.get("text") or "").strip():
        return False
    return raw.get("subtype") not in SKIPPED_SUBTYPES


class SlackClient:
    """Synchronous Slack API client bound to one workspace token."""

    def __init__(self, token: str, max_retries: int = 3):
        self._client = WebClient(token=token)
        self._client.retry_handlers.append(
            RateLimitErrorRetryHandler(max_retry_count=max_retries)
        )

    def _raise_for(self, e: SlackApiError, action: str) -> None:
        code = _error_code(e)
        if code in AUTH_ERROR_CODES:
            raise AuthError(
                f"Slack rejected the token while trying to {action}: {code}",
                error_code=code,
            ) from e
        raise SlackMessagesError(f"Failed to {action}: {code or e}") from e

    def authenticate(self) -> AuthInfo:
        """
        Verify the token.

        Raises:
            AuthError: If the token is invalid or revoked
        """
        try:
            result = self._client.auth_test()
        except SlackApiError as e:
            code = _error_code(e)
            raise AuthError(
                f"Authentication failed: {code or e}", error_code=code
            ) from e

        return AuthInfo(
            user_id=result["user_id"],
            workspace_id=result["team_id"],
            workspace_name=result["team"],
        )

    def list_users(self) -> list[SlackUser]:
        """All active, non-bot users."""
        users: list[SlackUser] = []
        try:
            for page in self._client.users_list(limit=PAGE_SIZE):
                for member in page.get("members", []):
                    if not member.get("id"):
                        continue
                    if member.get("deleted") or member.get("is_bot"):
                        continue
                    profile = member.get("profile") or {}
                    users.append(
                        SlackUser(
                            id=member["id"],
                            name=member.get("name") or "",
                            real_name=member.get("real_name")
                            or profile.get("real_name")
                            or "",
                            display_name=profile.get("display_name") or "",
                        )
                    )
        except SlackApiError as e:
            self._raise_for(e, "list users")

        logger.debug("Listed %d users", len(users))
        return users

    def list_conversations(self) -> list[SlackConversation]:
        """Unarchived conversations the token owner is a member of."""
        conversations: list[SlackConversation] = []
        try:
            pages = self._client.conversations_list(
                types=CONVERSATION_TYPES,
                exclude_archived=True,
                limit=PAGE_SIZE,
            )
            for page in pages:
                for channel in page.get("channels", []):
                    channel_id = channel.get("id")
                    is_im = bool(channel.get("is_im"))
                    is_member = bool(
                        channel.get("is_member") or is_im or channel.get("is_mpim")
                    )
                    if not channel_id or not is_member:
                        continue
                    conversations.append(
                        SlackConversation(
                            id=channel_id,
                            name=channel.get("name") or channel_id,
                            is_direct_message=is_im,
                            is_private=bool(channel.get("is_private")),
                            counterpart_user_id=channel.get("user"),
                        )
                    )
        except SlackApiError as e:
            self._raise_for(e, "list conversations")

        logger.debug("Listed %d conversations", len(conversations))
        return conversations

    def fetch_history(
        self, conversation_id: str, oldest: str | None = None
    ) -> Iterator[SlackMessage]:
        """
        Yield messages in a conversation newer than ``oldest``.

        Args:
            conversation_id: Channel, group or DM ID
            oldest: Exclusive lower bound (a Slack ts), or None for all

        Raises:
            ConversationAccessError: If the history cannot be read
        """
        kwargs: dict = {"channel": conversation_id, "limit": PAGE_SIZE}
        if oldest:
            kwargs["oldest"] = oldest
        try:
            for page in self._client.conversations_history(**kwargs):
                for raw in page.get("messages", []):
                    if not _is_message(raw):
                        continue
                    # A thread parent carries its own ts as thread_ts
                    thread_ts = raw.get("thread_ts")
                    if thread_ts == raw["ts"]:
                        thread_ts = None
                    yield SlackMessage(
                        external_id=raw["ts"],
                        user_id=raw.get("user") or "",
                        text=raw["text"],
                        conversation_id=conversation_id,
                        thread_parent_id=thread_ts,
                        reply_count=int(raw.get("reply_count") or 0),
                    )
        except SlackApiError as e:
            raise ConversationAccessError(
                conversation_id,
                f"cannot read history: {_error_code(e) or e}",
            ) from e
        except OSError as e:
            # Timeouts and dropped connections (URLError is an OSError)
            raise ConversationAccessError(
                conversation_id, f"cannot read history: {e}"
            ) from e

    def fetch_thread_replies(
        self, conversation_id: str, parent_id: str
    ) -> Iterator[SlackMessage]:
        """
        Yield the replies in a thread, excluding the parent message.

        Raises:
            ConversationAccessError: If the thread cannot be read
        """
        try:
            pages = self._client.conversations_replies(
                channel=conversation_id, ts=parent_id, limit=PAGE_SIZE
            )
            for page in pages:
                for raw in page.get("messages", []):
                    if raw.get("ts") == parent_id or not _is_message(raw):
                        continue
                    yield SlackMessage(
                        external_id=raw["ts"],
                        user_id=raw.get("user") or "",
                        text=raw["text"],
                        conversation_id=conversation_id,
                        thread_parent_id=parent_id,
                    )
        except SlackApiError as e:
            raise ConversationAccessError(
                conversation_id,
                f"cannot read thread {parent_id}: {_error_code(e) or e}",
            ) from e
        except OSError as e:
            raise ConversationAccessError(
                conversation_id, f"cannot read thread {parent_id}: {e}"
            ) from e

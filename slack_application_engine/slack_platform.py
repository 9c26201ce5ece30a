"""Slack implementation of the chat platform contract."""

from __future__ import annotations

import re
import time
from typing import Any, Callable, List, Mapping, Set, TypeVar

import structlog
from slack_sdk.errors import SlackApiError

from .platform import (
    NOT_FOUND,
    PERMISSION,
    RATE_LIMITED,
    UNKNOWN,
    ChatPlatformError,
    Member,
    OutgoingMessage,
    PostedMessage,
    with_rate_limit_retry,
)
from .slack_client import SlackClient

T = TypeVar("T")

PERMISSION_ERRORS = frozenset(
    {
        "missing_scope",
        "not_allowed_token_type",
        "no_permission",
        "not_authorized",
        "not_in_channel",
        "permission_denied",
        "restricted_action",
        "is_archived",
    }
)
NOT_FOUND_ERRORS = frozenset(
    {
        "channel_not_found",
        "message_not_found",
        "thread_not_found",
        "user_not_found",
        "users_not_found",
        "no_such_subteam",
        "subteam_not_found",
    }
)
SLACKBOT_USER_ID = "USLACKBOT"
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
THREAD_ARCHIVED_MARKER = ":file_cabinet: *Discussion archived*"


def _error_code(exc: SlackApiError) -> str:
    response = getattr(exc, "response", None)
    if response is None:
        return ""
    try:
        return str(response.get("error") or "")
    except AttributeError:
        return ""


def _retry_after(exc: SlackApiError) -> float | None:
    headers = getattr(getattr(exc, "response", None), "headers", None) or {}
    value = headers.get("Retry-After") or headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def to_platform_error(exc: SlackApiError) -> ChatPlatformError:
    """Classify a Slack API failure into a platform error kind."""

    code = _error_code(exc)
    status_code = getattr(getattr(exc, "response", None), "status_code", None)
    if code == "ratelimited" or status_code == 429:
        return ChatPlatformError(RATE_LIMITED, code or "ratelimited", retry_after=_retry_after(exc))
    if code in PERMISSION_ERRORS:
        return ChatPlatformError(PERMISSION, code)
    if code in NOT_FOUND_ERRORS:
        return ChatPlatformError(NOT_FOUND, code)
    return ChatPlatformError(UNKNOWN, code or str(exc))


class SlackChatPlatform:
    """Adapt ``SlackClient`` calls to the engine's chat platform operations.

    Every Slack call is retried on rate limits. ``SlackApiError`` and transport
    failures (connection resets, timeouts, DNS errors) are re-raised as
    ``ChatPlatformError``.
    """

    def __init__(
        self,
        client: SlackClient,
        *,
        max_attempts: int = 6,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._workspace_name: str | None = None

    def _call(self, label: str, run: Callable[[], T]) -> T:
        def attempt() -> T:
            try:
                return run()
            except SlackApiError as exc:
                raise to_platform_error(exc) from exc
            except OSError as exc:
                # URLError, socket timeouts and connection resets all land here.
                raise ChatPlatformError(UNKNOWN, f"{type(exc).__name__}: {exc}") from exc

        return with_rate_limit_retry(label, attempt, max_attempts=self._max_attempts, sleep=self._sleep)

    # --------------------------------------------------------------- messages

    def send_message(self, channel_id: str, message: OutgoingMessage) -> PostedMessage:
        attachments = None
        blocks = message.blocks or None
        if message.color:
            attachments = [{"color": message.color, "blocks": list(message.blocks)}] if message.blocks else [
                {"color": message.color, "text": message.text}
            ]
            blocks = None
        metadata = None
        if message.metadata_type:
            metadata = {"event_type": message.metadata_type, "event_payload": dict(message.metadata)}
        response = self._call(
            "send_message",
            lambda: self._client.post_message(
                channel=channel_id, text=message.text, blocks=blocks, attachments=attachments, metadata=metadata
            ),
        )
        return PostedMessage(message_id=response["ts"], channel_id=response.get("channel") or channel_id)

    def reply_to_message(
        self, channel_id: str, message_id: str, text: str, *, broadcast: bool = False
    ) -> PostedMessage:
        response = self._call(
            "reply_to_message",
            lambda: self._client.post_message(
                channel=channel_id, text=text, thread_ts=message_id, reply_broadcast=broadcast
            ),
        )
        return PostedMessage(message_id=response["ts"], channel_id=response.get("channel") or channel_id)

    def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        try:
            self._call("add_reaction", lambda: self._client.add_reaction(channel=channel_id, ts=message_id, name=emoji))
        except ChatPlatformError as exc:
            if exc.message != "already_reacted":
                raise

    def create_thread(self, channel_id: str, message_id: str, name: str) -> str:
        """Open the discussion thread under *message_id*; Slack threads are keyed by the parent ts."""

        self.reply_to_message(channel_id, message_id, f":speech_balloon: *{name}*")
        return message_id

    def archive_thread(self, channel_id: str, thread_id: str, reason: str) -> None:
        self.reply_to_message(channel_id, thread_id, f"{THREAD_ARCHIVED_MARKER}\n{reason}")

    def recolor_message(self, channel_id: str, message_id: str, color: str) -> bool:
        message = self._call("fetch_message", lambda: self._client.fetch_message(channel=channel_id, ts=message_id))
        if not message:
            return False
        attachments = [dict(item) for item in message.get("attachments") or []]
        if attachments:
            attachments[0]["color"] = color
        else:
            attachments = [{"color": color, "blocks": list(message.get("blocks") or [])}]
        self._call(
            "recolor_message",
            lambda: self._client.update_message(
                channel=channel_id, ts=message_id, text=message.get("text") or "", attachments=attachments
            ),
        )
        return True

    def find_tagged_message(
        self, channel_id: str, metadata_type: str, match: Callable[[Mapping[str, Any]], bool]
    ) -> PostedMessage | None:
        """Return the newest recent message whose app metadata has *metadata_type* and satisfies *match*."""

        messages = self._call("find_tagged_message", lambda: self._client.recent_messages(channel=channel_id))
        for message in messages:
            metadata = message.get("metadata") or {}
            if metadata.get("event_type") != metadata_type:
                continue
            if not match(metadata.get("event_payload") or {}):
                continue
            ts = message.get("ts")
            has_thread = bool(message.get("reply_count") or message.get("thread_ts"))
            return PostedMessage(message_id=ts, channel_id=channel_id, thread_id=ts if has_thread else None)
        return None

    # ---------------------------------------------------------------- people

    def fetch_reaction_users(self, channel_id: str, message_id: str, emoji: str) -> Set[str]:
        return set(
            self._call(
                "fetch_reaction_users",
                lambda: self._client.reaction_user_ids(channel=channel_id, ts=message_id, name=emoji),
            )
        )

    @staticmethod
    def _to_member(user: Mapping[str, Any]) -> Member:
        profile = user.get("profile") or {}
        display_name = profile.get("display_name") or user.get("real_name") or user.get("name") or ""
        return Member(
            user_id=user.get("id", ""),
            display_name=display_name,
            is_bot=bool(user.get("is_bot")) or user.get("id") == SLACKBOT_USER_ID,
        )

    def fetch_channel_members(self, channel_id: str) -> List[Member]:
        user_ids = self._call("fetch_channel_members", lambda: self._client.channel_member_ids(channel=channel_id))
        members: List[Member] = []
        for user_id in user_ids:
            user = self._call("fetch_member", lambda user_id=user_id: self._client.user_info(user=user_id))
            if user.get("deleted"):
                continue
            members.append(self._to_member(user))
        return members

    def fetch_member(self, user_id: str) -> Member | None:
        try:
            user = self._call("fetch_member", lambda: self._client.user_info(user=user_id))
        except ChatPlatformError as exc:
            if exc.kind == NOT_FOUND:
                return None
            raise
        if not user or user.get("deleted"):
            return None
        return self._to_member(user)

    def find_user(self, query: str) -> str | None:
        """Resolve an email address to a user id."""

        query = (query or "").strip()
        if not EMAIL_PATTERN.match(query):
            return None
        try:
            user = self._call("find_user", lambda: self._client.lookup_user_by_email(email=query))
        except ChatPlatformError as exc:
            if exc.kind == NOT_FOUND:
                return None
            raise
        return user.get("id") or None

    def fetch_user_group_members(self, group_id: str) -> Set[str]:
        return set(
            self._call("fetch_user_group_members", lambda: self._client.usergroup_member_ids(usergroup=group_id))
        )

    def add_user_to_group(self, group_id: str, user_id: str) -> None:
        """Add *user_id* to the user group; Slack replaces the full member list."""

        members = self.fetch_user_group_members(group_id)
        if user_id in members:
            return
        updated = sorted(members | {user_id})
        self._call("add_user_to_group", lambda: self._client.set_usergroup_members(usergroup=group_id, users=updated))
        structlog.get_logger().bind(group_id=group_id).info("user_group_member_added", user_id=user_id)

    def send_direct_message(self, user_id: str, text: str) -> PostedMessage:
        channel_id = self._call("open_direct_message", lambda: self._client.open_direct_message(user=user_id))
        response = self._call("send_direct_message", lambda: self._client.post_message(channel=channel_id, text=text))
        return PostedMessage(message_id=response["ts"], channel_id=channel_id)

    def workspace_name(self) -> str:
        if self._workspace_name is None:
            self._workspace_name = self._call("workspace_name", self._client.team_name) or "Unknown Workspace"
        return self._workspace_name

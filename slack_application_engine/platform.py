"""Chat platform contract consumed by the engine and its retry helper."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, Protocol, Sequence, Set, TypeVar

import structlog

RATE_LIMITED = "rate_limited"
PERMISSION = "permission"
NOT_FOUND = "not_found"
UNKNOWN = "unknown"

DEFAULT_MAX_ATTEMPTS = 6
DEFAULT_MINIMUM_WAIT = 0.3
DEFAULT_RETRY_AFTER = 1.0
RETRY_PADDING = 0.1

T = TypeVar("T")


class ChatPlatformError(Exception):
    """Failure reported by the chat platform, tagged with a coarse kind."""

    def __init__(self, kind: str, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retry_after = retry_after

    @property
    def is_rate_limited(self) -> bool:
        return self.kind == RATE_LIMITED


@dataclass(frozen=True)
class PostedMessage:
    message_id: str
    channel_id: str
    thread_id: str | None = None


@dataclass(frozen=True)
class Member:
    user_id: str
    display_name: str = ""
    is_bot: bool = False


@dataclass(frozen=True)
class OutgoingMessage:
    """Platform-neutral message: plain text plus optional rich blocks and colour bar."""

    text: str
    blocks: List[Mapping[str, Any]] = field(default_factory=list)
    color: str | None = None
    mention_user_ids: Sequence[str] = ()
    mention_group_ids: Sequence[str] = ()
    metadata_type: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


class ChatPlatform(Protocol):
    def send_message(self, channel_id: str, message: OutgoingMessage) -> PostedMessage: ...

    def reply_to_message(
        self, channel_id: str, message_id: str, text: str, *, broadcast: bool = False
    ) -> PostedMessage: ...

    def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None: ...

    def create_thread(self, channel_id: str, message_id: str, name: str) -> str: ...

    def archive_thread(self, channel_id: str, thread_id: str, reason: str) -> None: ...

    def fetch_reaction_users(self, channel_id: str, message_id: str, emoji: str) -> Set[str]: ...

    def fetch_channel_members(self, channel_id: str) -> List[Member]: ...

    def fetch_member(self, user_id: str) -> Member | None: ...

    def find_user(self, query: str) -> str | None: ...

    def fetch_user_group_members(self, group_id: str) -> Set[str]: ...

    def add_user_to_group(self, group_id: str, user_id: str) -> None: ...

    def send_direct_message(self, user_id: str, text: str) -> PostedMessage: ...

    def recolor_message(self, channel_id: str, message_id: str, color: str) -> bool: ...

    def find_tagged_message(
        self, channel_id: str, metadata_type: str, match: Callable[[Mapping[str, Any]], bool]
    ) -> PostedMessage | None: ...

    def workspace_name(self) -> str: ...


def error_text(error: BaseException) -> str:
    """Human-readable failure text; platform errors keep their own message."""

    if isinstance(error, ChatPlatformError):
        return error.message
    return f"{type(error).__name__}: {error}"


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, ChatPlatformError):
        return error.is_rate_limited
    return "rate limit" in str(error).lower()


def with_rate_limit_retry(
    label: str,
    run: Callable[[], T],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    minimum_wait: float = DEFAULT_MINIMUM_WAIT,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *run*, retrying rate-limited failures with the server's retry hint.

    Any other failure, and the last rate-limited one, propagates unchanged.
    """

    log = structlog.get_logger().bind(operation=label)
    for attempt in range(1, max_attempts + 1):
        try:
            return run()
        except Exception as exc:
            if not is_rate_limit_error(exc) or attempt >= max_attempts:
                raise
            retry_after = getattr(exc, "retry_after", None)
            wait = max(minimum_wait, retry_after if retry_after is not None else DEFAULT_RETRY_AFTER) + RETRY_PADDING
            log.warning(
                "rate_limited_retry",
                wait_seconds=round(wait, 3),
                next_attempt=attempt + 1,
                max_attempts=max_attempts,
            )
            sleep(wait)
    raise RuntimeError(f"{label} exhausted {max_attempts} attempts")  # pragma: no cover


def mention_user(user_id: str | None) -> str:
    return f"<@{user_id}>" if user_id else ""


def mention_group(group_id: str) -> str:
    return f"<!subteam^{group_id}>"


def mention_channel(channel_id: str) -> str:
    return f"<#{channel_id}>"


def join_mentions(ids: Iterable[str], render: Callable[[str], str] = mention_user) -> str:
    return ", ".join(render(item) for item in ids)

"""Parsing and authorization helpers for the review slash commands."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

ACCEPT_COMMAND = "/accept"
DENY_COMMAND = "/deny"
REOPEN_COMMAND = "/reopen"
CLOSE_COMMAND = "/close"
QUEUE_COMMAND = "/queue"

DECISION_COMMANDS = {ACCEPT_COMMAND: "accepted", DENY_COMMAND: "denied"}
FORCE_FLAGS = {"force", "--force", "-f"}

MESSAGE_LINK_PATTERN = re.compile(r"/archives/[A-Z0-9]+/p(\d{10})(\d{6})")
MESSAGE_TS_PATTERN = re.compile(r"^\d{10}\.\d{6}$")


@dataclass(frozen=True)
class CommandContext:
    """Parsed review command invocation."""

    command: str
    target: str
    force: bool = False
    reason: str = ""


def normalize_target(raw: str) -> str:
    """Turn a message permalink into its ts; anything else is returned trimmed."""

    value = (raw or "").strip().strip("<>")
    match = MESSAGE_LINK_PATTERN.search(value)
    if match:
        return f"{match.group(1)}.{match.group(2)}"
    return value


def parse_review_command(command: str, text: str) -> CommandContext:
    """Parse ``<target> [force] [reason...]`` for /accept, /deny, /reopen and /close."""

    tokens = (text or "").split()
    if not tokens:
        raise ValueError(f"Usage: {command} <message link | message ts | application id> [reason]")

    target = normalize_target(tokens[0])
    rest = tokens[1:]
    force = False
    if command in DECISION_COMMANDS and rest and rest[0].lower() in FORCE_FLAGS:
        force = True
        rest = rest[1:]
    return CommandContext(command=command, target=target, force=force, reason=" ".join(rest))


def is_message_ts(value: str) -> bool:
    return bool(MESSAGE_TS_PATTERN.match(value or ""))


def is_user_authorized(user_id: str, allowed_ids: Iterable[str]) -> bool:
    """Return True when the user is in the allow list; an empty list allows everyone."""

    normalized = {item.strip() for item in allowed_ids if item and item.strip()}
    if not normalized:
        return True
    return user_id in normalized

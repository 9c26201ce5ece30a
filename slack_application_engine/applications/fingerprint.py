"""Stable identities for response rows and the dedup sets built from state."""

from __future__ import annotations

import hashlib
import re
from typing import Iterable, List, Sequence, Set

from .models import Application, State

ROW_KEY_SEPARATOR = "␟"

TIMESTAMP_HINTS = (("timestamp",),)
SUBMITTER_ID_HINTS = (("discord", "id"), ("slack", "id"), ("user", "id"), ("member", "id"))
DISPLAY_NAME_HINTS = (("discord", "user", "name"), ("discord", "name"), ("slack", "name"))
IN_CONTEXT_NAME_HINTS = (("ingame", "user", "name"), ("in game", "user", "name"), ("ingame", "name"))
DECLARED_TARGET_HINTS = (
    ("what are you applying for",),
    ("applying for",),
    ("application for",),
    ("track",),
    ("position",),
    ("role",),
)
APPLICANT_NAME_HINTS = ("name", "full name", "applicant", "discord name")

_FIELD_LINE_RE = re.compile(r"^\*\*(?P<key>.+?):\*\*\s*(?P<value>.*)$")


def normalize_comparable_text(value: str | None) -> str:
    return re.sub(r"\s+", " ", str(value or "").lower()).strip()


def is_answered(value) -> bool:
    return value is not None and str(value).strip() != ""


def extract_cell_by_header_hints(
    headers: Sequence[str],
    row: Sequence[str],
    hint_sets: Iterable[Sequence[str]],
) -> str:
    """Return the first cell whose header contains every word of any hint set."""

    hint_sets = list(hint_sets)
    for index, header in enumerate(headers):
        lowered = str(header or "").lower()
        for hints in hint_sets:
            if hints and all(hint.lower() in lowered for hint in hints):
                return str(row[index] if index < len(row) else "").strip()
    return ""


def extract_answered_fields(headers: Sequence[str], row: Sequence[str]) -> List[tuple[str, str]]:
    fields: List[tuple[str, str]] = []
    for index in range(max(len(headers), len(row))):
        value = row[index] if index < len(row) else None
        if not is_answered(value):
            continue
        header = str(headers[index] if index < len(headers) else "").strip()
        fields.append((header or f"Field {index + 1}", str(value).strip()))
    return fields


def format_submitted_fields(headers: Sequence[str], row: Sequence[str]) -> List[str]:
    return [f"**{key}:** {value}" for key, value in extract_answered_fields(headers, row)]


def submitted_fields_fingerprint(lines: Iterable[str]) -> str:
    return "|".join(text for text in (normalize_comparable_text(line) for line in lines) if text)


def identity_digest(value: str | None) -> str:
    """SHA-256 hex digest of an identity string, or "" when it is empty."""

    text = str(value or "")
    return hashlib.sha256(text.encode("utf-8")).hexdigest() if text else ""


def infer_applicant_name(headers: Sequence[str], row: Sequence[str]) -> str:
    for index, header in enumerate(headers):
        lowered = str(header or "").lower()
        value = row[index] if index < len(row) else ""
        if any(candidate in lowered for candidate in APPLICANT_NAME_HINTS) and is_answered(value):
            return str(value).strip()
    return "Applicant"


def _composite_key(timestamp: str, submitter_id: str, display_name: str, in_context: str, target: str) -> str:
    return "|".join(
        [
            f"ts:{timestamp.lower()}",
            f"id:{submitter_id.lower()}",
            f"dname:{display_name.lower()}",
            f"ign:{in_context.lower()}",
            f"apply:{target.lower()}",
        ]
    )


def build_response_key(headers: Sequence[str], row: Sequence[str]) -> str | None:
    """Derive the dedup identity of a response row.

    Rows with a timestamp column are keyed on the timestamp plus submitter
    identity, which survives sheet re-ordering. Other rows fall back to the
    full list of answered cells. ``None`` means the row carries no signal.
    """

    timestamp = extract_cell_by_header_hints(headers, row, TIMESTAMP_HINTS)
    if timestamp:
        return _composite_key(
            timestamp,
            extract_cell_by_header_hints(headers, row, SUBMITTER_ID_HINTS),
            extract_cell_by_header_hints(headers, row, DISPLAY_NAME_HINTS),
            extract_cell_by_header_hints(headers, row, IN_CONTEXT_NAME_HINTS),
            extract_cell_by_header_hints(headers, row, DECLARED_TARGET_HINTS),
        )

    cells = [str(cell).strip() for cell in row if is_answered(cell)]
    if not cells:
        return None
    return "row:" + ROW_KEY_SEPARATOR.join(cells).lower()


def parse_submitted_field_lines(lines: Iterable[str]) -> tuple[List[str], List[str]]:
    headers: List[str] = []
    values: List[str] = []
    for line in lines:
        match = _FIELD_LINE_RE.match(str(line or "").strip())
        if match:
            headers.append(match.group("key"))
            values.append(match.group("value"))
    return headers, values


def build_response_key_from_application(application: Application) -> str | None:
    explicit = (application.response_key or "").strip()
    if explicit:
        return explicit

    headers, values = parse_submitted_field_lines(application.submitted_fields)
    if not extract_cell_by_header_hints(headers, values, TIMESTAMP_HINTS):
        return None
    return build_response_key(headers, values)


def tracked_response_keys(state: State) -> Set[str]:
    keys: Set[str] = set()
    for job in state.post_jobs:
        key = (job.response_key or "").strip() or build_response_key(job.headers, job.row)
        if key:
            keys.add(key)
    for application in state.applications.values():
        key = build_response_key_from_application(application)
        if key:
            keys.add(key)
    return keys


def tracked_rows(state: State) -> Set[int]:
    rows: Set[int] = {job.row_index for job in state.post_jobs if job.row_index >= 2}
    rows.update(
        application.row_index
        for application in state.applications.values()
        if application.row_index is not None and application.row_index >= 2
    )
    return rows


_USER_MENTION_RE = re.compile(r"^<@([UW][A-Z0-9]{6,})(?:\|[^>]*)?>$")
_USER_ID_RE = re.compile(r"\b([UW][A-Z0-9]{6,})\b")


def infer_applicant_user_value(headers: Sequence[str], row: Sequence[str]) -> str | None:
    """Return the raw cell identifying the applicant's workspace account, if any."""

    fallback = None
    for index, header in enumerate(headers):
        value = str(row[index] if index < len(row) else "").strip()
        if not value:
            continue
        lowered = str(header or "").lower()
        if "slack" in lowered and "id" in lowered:
            return value
        if "slack" in lowered and fallback is None:
            fallback = value
        if ("user" in lowered or "member" in lowered) and "id" in lowered and fallback is None:
            fallback = value
        if "email" in lowered and fallback is None:
            fallback = value
    return fallback


def extract_user_id(value: str | None) -> str | None:
    """Pull a workspace user id out of a mention or free text."""

    raw = str(value or "").strip()
    if not raw:
        return None
    match = _USER_MENTION_RE.match(raw)
    if match:
        return match.group(1)
    match = _USER_ID_RE.search(raw)
    return match.group(1) if match else None

"""Versioned migrations and self-healing normalisation of the state document.

Persisted documents went through three shapes:

* version 0: camelCase document written by the first bot (``postJobs``,
  ``nextJobId``, ``settings.channelId``, job ``trackKey``).
* version 1: snake_case keys that still carry the singular legacy fields
  (``settings.channel_id``, ``settings.approved_role_id``, job ``track_key``).
* version 2: the canonical shape described by :class:`State`.

Each migration step is a pure function over plain dictionaries. After
migrating, :func:`normalize_state` validates the document piece by piece so
one broken record never takes the rest of the state down with it.
"""

from __future__ import annotations

import copy
import functools
import re
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Mapping

import structlog
from pydantic import ValidationError

from .fingerprint import build_response_key
from .models import (
    CURRENT_SCHEMA_VERSION,
    MAX_CONTROL_ACTIONS,
    Application,
    ControlAction,
    Job,
    Settings,
    State,
)
from .queue import format_job_id, parse_job_id_sequence, sort_jobs
from .tracks import TrackRegistry, infer_application_tracks

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_LEGACY_MARKERS = ("postJobs", "nextJobId", "lastRow", "controlActions")

# Maps whose keys are identifiers (message ids, track keys) rather than field names.
_KEYED_MAPS = {
    "applications",
    "threads",
    "channels",
    "approved_roles",
    "voter_roles",
    "vote_rules",
    "reviewer_mentions",
}


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _snake_case_keys(value: Any) -> Any:
    if isinstance(value, list):
        return [_snake_case_keys(item) for item in value]
    if not isinstance(value, dict):
        return value

    converted: Dict[str, Any] = {}
    for key, item in value.items():
        name = camel_to_snake(str(key))
        if name in _KEYED_MAPS and isinstance(item, dict):
            converted[name] = {entry_key: _snake_case_keys(entry) for entry_key, entry in item.items()}
        else:
            converted[name] = _snake_case_keys(item)
    return converted


def detect_schema_version(raw: Mapping[str, Any]) -> int:
    version = raw.get("schema_version", raw.get("schemaVersion"))
    if isinstance(version, int) and not isinstance(version, bool) and version >= 0:
        return version
    if any(marker in raw for marker in _LEGACY_MARKERS):
        return 0
    return 1


def migrate_v0_to_v1(document: Dict[str, Any]) -> Dict[str, Any]:
    """Rename every camelCase field to snake_case."""

    migrated = _snake_case_keys(document)
    migrated.pop("schema_version", None)
    migrated["schema_version"] = 1
    return migrated


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if value in (None, ""):
        return []
    return [value]


def migrate_v1_to_v2(document: Dict[str, Any], *, default_track_key: str = "tester") -> Dict[str, Any]:
    """Fold singular legacy bindings into their per-track maps."""

    migrated = dict(document)
    settings = dict(migrated.get("settings") or {}) if isinstance(migrated.get("settings"), dict) else {}

    channels = dict(settings.get("channels") or {}) if isinstance(settings.get("channels"), dict) else {}
    legacy_channel = settings.pop("channel_id", None)
    if isinstance(legacy_channel, str) and legacy_channel.strip() and not channels.get(default_track_key):
        channels[default_track_key] = legacy_channel.strip()
    settings["channels"] = channels

    roles = dict(settings.get("approved_roles") or {}) if isinstance(settings.get("approved_roles"), dict) else {}
    legacy_role = settings.pop("approved_role_id", None)
    if isinstance(legacy_role, str) and legacy_role.strip() and not roles.get(default_track_key):
        roles[default_track_key] = [legacy_role.strip()]
    settings["approved_roles"] = {key: _as_list(value) for key, value in roles.items()}

    voter_roles = settings.get("voter_roles")
    if isinstance(voter_roles, dict):
        settings["voter_roles"] = {key: _as_list(value) for key, value in voter_roles.items()}

    mentions = settings.get("reviewer_mentions")
    if isinstance(mentions, dict):
        upgraded = {}
        for track_key, entry in mentions.items():
            if not isinstance(entry, dict):
                continue
            entry = dict(entry)
            if "group_ids" not in entry and "role_ids" in entry:
                entry["group_ids"] = _as_list(entry.pop("role_ids"))
            upgraded[track_key] = entry
        settings["reviewer_mentions"] = upgraded

    migrated["settings"] = settings

    jobs = []
    for job in _as_list(migrated.get("post_jobs")):
        if isinstance(job, dict) and "track_keys" not in job and "track_key" in job:
            job = dict(job)
            job["track_keys"] = _as_list(job.pop("track_key"))
        jobs.append(job)
    migrated["post_jobs"] = jobs
    migrated["schema_version"] = 2
    return migrated


def migrate_state_document(raw: Mapping[str, Any], *, default_track_key: str = "tester") -> Dict[str, Any]:
    """Run every pending migration step and return a current-version document."""

    steps: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
        0: migrate_v0_to_v1,
        1: functools.partial(migrate_v1_to_v2, default_track_key=default_track_key),
    }
    document = copy.deepcopy(dict(raw))
    version = detect_schema_version(document)
    while version < CURRENT_SCHEMA_VERSION:
        document = steps[version](document)
        version = document["schema_version"]
    return document


def _salvage_settings(raw: Any, registry: TrackRegistry) -> Settings:
    if not isinstance(raw, dict):
        return Settings()

    defaults = Settings()
    salvaged: Dict[str, Any] = {}
    for name in Settings.model_fields:
        if name not in raw:
            continue
        try:
            Settings.model_validate({name: raw[name]})
        except ValidationError:
            continue
        salvaged[name] = raw[name]

    settings = Settings.model_validate(salvaged) if salvaged else defaults
    settings.custom_tracks = registry.set_custom_tracks(settings.custom_tracks)
    return settings


def _normalize_jobs(raw_jobs: Any, registry: TrackRegistry, log) -> tuple[List[Job], int]:
    jobs: List[Job] = []
    used_ids: set[str] = set()
    generated = 1
    highest = 0

    for raw_job in _as_list(raw_jobs):
        if not isinstance(raw_job, dict):
            continue
        try:
            row_index = int(raw_job.get("row_index"))
        except (TypeError, ValueError):
            continue
        if row_index < 2:
            log.warning("state_job_dropped", reason="invalid_row_index", job_id=raw_job.get("job_id"))
            continue

        sequence = parse_job_id_sequence(raw_job.get("job_id"))
        if sequence <= 0 or format_job_id(sequence) in used_ids:
            while format_job_id(generated) in used_ids:
                generated += 1
            sequence = generated
        job_id = format_job_id(sequence)
        used_ids.add(job_id)
        highest = max(highest, sequence)
        if generated <= sequence:
            generated = sequence + 1

        data = dict(raw_job)
        data["job_id"] = job_id
        data["row_index"] = row_index
        data.setdefault("created_at", datetime.now(UTC))
        attempts = data.get("attempts")
        if not isinstance(attempts, int) or isinstance(attempts, bool) or attempts < 0:
            data["attempts"] = 0
        try:
            job = Job.model_validate(data)
        except ValidationError as exc:
            log.warning("state_job_dropped", reason="invalid_job", job_id=job_id, error=str(exc))
            continue

        job.track_keys = registry.normalize_track_keys(job.track_keys)
        if not job.track_keys:
            job.track_keys = infer_application_tracks(registry, job.headers, job.row)
        job.posted_track_keys = [
            key for key in registry.normalize_track_keys(job.posted_track_keys) if key in job.track_keys
        ]
        if not (job.response_key or "").strip():
            job.response_key = build_response_key(job.headers, job.row)
        jobs.append(job)

    sort_jobs(jobs)
    return jobs, highest


def _normalize_applications(raw_applications: Any, registry: TrackRegistry, log) -> Dict[str, Application]:
    applications: Dict[str, Application] = {}
    if not isinstance(raw_applications, dict):
        return applications

    for message_id, raw_application in raw_applications.items():
        if not isinstance(raw_application, dict):
            continue
        data = dict(raw_application)
        data["message_id"] = str(data.get("message_id") or message_id)
        raw_track = str(data.get("track_key") or "").strip()
        data["track_key"] = registry.normalize_track_key(raw_track) or raw_track or registry.default_track_key
        try:
            applications[str(message_id)] = Application.model_validate(data)
        except ValidationError as exc:
            log.warning("state_application_dropped", message_id=message_id, error=str(exc))
    return applications


def _normalize_control_actions(raw_actions: Any) -> List[ControlAction]:
    actions: List[ControlAction] = []
    for raw_action in _as_list(raw_actions):
        try:
            actions.append(ControlAction.model_validate(raw_action))
        except ValidationError:
            continue
    return actions[-MAX_CONTROL_ACTIONS:]


def normalize_state(raw: Any, *, registry: TrackRegistry | None = None) -> State:
    """Return a valid :class:`State` for any persisted document.

    Never raises: unreadable documents yield the default state, malformed
    records are dropped and logged.
    """

    log = structlog.get_logger().bind(component="state")
    registry = registry or TrackRegistry()
    if not isinstance(raw, Mapping):
        if raw is not None:
            log.warning("state_unreadable", type=type(raw).__name__)
        return State()

    try:
        document = migrate_state_document(raw, default_track_key=registry.default_track_key)
    except (KeyError, TypeError, ValueError) as exc:
        log.warning("state_migration_failed", error=str(exc))
        return State()

    settings = _salvage_settings(document.get("settings"), registry)
    jobs, highest_sequence = _normalize_jobs(document.get("post_jobs"), registry, log)
    applications = _normalize_applications(document.get("applications"), registry, log)

    try:
        next_job_id = int(document.get("next_job_id"))
    except (TypeError, ValueError):
        next_job_id = 1
    next_job_id = max(next_job_id, 1, highest_sequence + 1)

    last_row = document.get("last_row")
    if not isinstance(last_row, int) or isinstance(last_row, bool):
        last_row = 1

    threads = document.get("threads")
    threads = {str(key): str(value) for key, value in threads.items()} if isinstance(threads, dict) else {}

    return State(
        schema_version=CURRENT_SCHEMA_VERSION,
        last_row=last_row,
        applications=applications,
        threads=threads,
        post_jobs=jobs,
        next_job_id=next_job_id,
        control_actions=_normalize_control_actions(document.get("control_actions")),
        settings=settings,
    )


def record_control_action(
    state: State,
    action: str,
    *,
    user_id: str | None = None,
    channel_id: str | None = None,
    detail: str | None = None,
    now: datetime | None = None,
) -> ControlAction:
    """Append an operator action to the bounded audit log."""

    entry = ControlAction(
        action=action,
        at=now or datetime.now(UTC),
        user_id=user_id,
        channel_id=channel_id,
        detail=detail,
    )
    state.control_actions.append(entry)
    if len(state.control_actions) > MAX_CONTROL_ACTIONS:
        del state.control_actions[: len(state.control_actions) - MAX_CONTROL_ACTIONS]
    return entry

"""Pydantic models describing the persisted engine state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_validator, model_validator

STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_DENIED = "denied"
STATUS_CLOSED = "closed"

KNOWN_STATUSES = {STATUS_PENDING, STATUS_ACCEPTED, STATUS_DENIED, STATUS_CLOSED}

CURRENT_SCHEMA_VERSION = 2
MAX_CONTROL_ACTIONS = 200


def _clamp(value: Any, *, minimum: int, maximum: int, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    if isinstance(value, float) and not value.is_integer():
        return fallback
    return max(minimum, min(maximum, number))


class VoteRule(BaseModel):
    """Supermajority fraction plus an absolute floor of votes."""

    numerator: int = 2
    denominator: int = 3
    minimum_votes: int = 2

    @model_validator(mode="before")
    @classmethod
    def clamp_values(cls, value):
        if not isinstance(value, dict):
            return {}
        numerator = _clamp(value.get("numerator"), minimum=1, maximum=20, fallback=2)
        denominator = _clamp(value.get("denominator"), minimum=1, maximum=20, fallback=3)
        minimum_votes = _clamp(
            value.get("minimum_votes", value.get("minimumVotes")),
            minimum=1,
            maximum=200,
            fallback=2,
        )
        return {
            "numerator": numerator,
            "denominator": max(denominator, numerator),
            "minimum_votes": minimum_votes,
        }


class VoteContext(BaseModel):
    eligible_count: int
    yes_count: int
    no_count: int
    threshold: int
    rule: VoteRule = Field(default_factory=VoteRule)


class SideEffectResult(BaseModel):
    """Outcome of a single side effect step (announcement, DM, log)."""

    status: str
    message: str


class FailedRoleEntry(BaseModel):
    role_id: str
    reason: str


class RoleGrantResult(SideEffectResult):
    user_id: str | None = None
    role_ids: List[str] = Field(default_factory=list)
    granted_role_ids: List[str] = Field(default_factory=list)
    already_has_role_ids: List[str] = Field(default_factory=list)
    failed_role_entries: List[FailedRoleEntry] = Field(default_factory=list)


class AcceptanceBlock(BaseModel):
    status: str
    user_id: str | None = None
    reason: str
    source: str | None = None
    actor_id: str | None = None
    warned_at: datetime | None = None


class LastDecision(BaseModel):
    status: str
    decided_at: datetime | None = None
    decided_by: str | None = None
    decision_source: str | None = None
    decision_reason: str | None = None


class Job(BaseModel):
    """A queued request to publish one response row to one or more tracks."""

    job_id: str
    row_index: int
    track_keys: List[str] = Field(default_factory=list)
    posted_track_keys: List[str] = Field(default_factory=list)
    response_key: str | None = None
    headers: List[str] = Field(default_factory=list)
    row: List[str] = Field(default_factory=list)
    created_at: datetime
    attempts: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None

    @field_validator("headers", "row", mode="before")
    @classmethod
    def stringify_cells(cls, value):
        if not isinstance(value, list):
            return []
        return ["" if cell is None else str(cell) for cell in value]

    @field_validator("row_index")
    @classmethod
    def validate_row_index(cls, value: int) -> int:
        if value < 2:
            raise ValueError("row_index must point at a data row (>= 2)")
        return value

    @property
    def is_complete(self) -> bool:
        return bool(self.track_keys) and set(self.track_keys) <= set(self.posted_track_keys)


class Application(BaseModel):
    """A published, reviewable submission and its decision lifecycle."""

    message_id: str
    application_id: str | None = None
    channel_id: str
    thread_id: str | None = None
    status: str = STATUS_PENDING
    track_key: str
    row_index: int | None = None
    response_key: str | None = None
    job_id: str | None = None
    applicant_name: str = "Applicant"
    applicant_user_id: str | None = None
    created_at: datetime | None = None
    submitted_fields: List[str] = Field(default_factory=list)
    submitted_fields_fingerprint: str | None = None

    decided_at: datetime | None = None
    decided_by: str | None = None
    decision_source: str | None = None
    decision_reason: str | None = None
    approved_role_result: RoleGrantResult | None = None
    accept_announce_result: SideEffectResult | None = None
    deny_dm_result: SideEffectResult | None = None
    last_acceptance_block: AcceptanceBlock | None = None
    vote_context: VoteContext | None = None
    last_decision: LastDecision | None = None

    reopened_at: datetime | None = None
    reopened_by: str | None = None
    reopen_reason: str | None = None
    last_reminder_at: datetime | None = None
    reminder_count: int = 0

    closed_at: datetime | None = None
    closed_by: str | None = None
    close_reason: str | None = None
    admin_done: bool = False

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, value):
        normalised = str(value or "").strip().lower()
        return normalised if normalised in KNOWN_STATUSES else STATUS_PENDING

    @field_validator("reminder_count", mode="before")
    @classmethod
    def clamp_reminders(cls, value):
        return _clamp(value, minimum=0, maximum=2**53 - 1, fallback=0)


class CustomTrack(BaseModel):
    key: str
    label: str
    aliases: List[str] = Field(default_factory=list)


class ReviewerMentions(BaseModel):
    user_ids: List[str] = Field(default_factory=list)
    group_ids: List[str] = Field(default_factory=list)


class ReminderSettings(BaseModel):
    enabled: bool = False
    threshold_hours: int = 24
    repeat_hours: int = 12

    @field_validator("threshold_hours", "repeat_hours", mode="before")
    @classmethod
    def clamp_hours(cls, value):
        return _clamp(value, minimum=1, maximum=24 * 30, fallback=24)


class DigestSettings(BaseModel):
    enabled: bool = False
    hour_utc: int = 15
    last_digest_date: str | None = None

    @field_validator("hour_utc", mode="before")
    @classmethod
    def clamp_hour(cls, value):
        return _clamp(value, minimum=0, maximum=23, fallback=15)


class Settings(BaseModel):
    """Operator-configured bindings and templates."""

    channels: Dict[str, str] = Field(default_factory=dict)
    approved_roles: Dict[str, List[str]] = Field(default_factory=dict)
    voter_roles: Dict[str, List[str]] = Field(default_factory=dict)
    vote_rules: Dict[str, VoteRule] = Field(default_factory=dict)
    reviewer_mentions: Dict[str, ReviewerMentions] = Field(default_factory=dict)
    log_channel_id: str | None = None
    accept_announce_channel_id: str | None = None
    accept_announce_template: str | None = None
    deny_dm_template: str | None = None
    custom_tracks: List[CustomTrack] = Field(default_factory=list)
    reminders: ReminderSettings = Field(default_factory=ReminderSettings)
    daily_digest: DigestSettings = Field(default_factory=DigestSettings)

    def vote_rule_for(self, track_key: str) -> VoteRule:
        return self.vote_rules.get(track_key) or VoteRule()


class ControlAction(BaseModel):
    action: str
    at: datetime
    user_id: str | None = None
    channel_id: str | None = None
    detail: str | None = None


class State(BaseModel):
    """Aggregate root read, mutated and written back on every operation."""

    schema_version: int = CURRENT_SCHEMA_VERSION
    last_row: int = 1
    applications: Dict[str, Application] = Field(default_factory=dict)
    threads: Dict[str, str] = Field(default_factory=dict)
    post_jobs: List[Job] = Field(default_factory=list)
    next_job_id: int = 1
    control_actions: List[ControlAction] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)

    def application_for_thread(self, thread_id: str) -> Application | None:
        message_id = self.threads.get(thread_id)
        if message_id is None:
            return None
        return self.applications.get(message_id)

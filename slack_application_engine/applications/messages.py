"""Block Kit and plain-text builders for application messages and notices."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Sequence

from slack_application_engine.platform import OutgoingMessage, mention_group, mention_user

from .fingerprint import extract_answered_fields
from .models import (
    STATUS_ACCEPTED,
    STATUS_CLOSED,
    STATUS_DENIED,
    STATUS_PENDING,
    Application,
    ReviewerMentions,
)

STATUS_COLORS = {
    STATUS_PENDING: "#2B2D31",
    STATUS_ACCEPTED: "#57F287",
    STATUS_DENIED: "#ED4245",
    STATUS_CLOSED: "#99AAB5",
}

APPLICATION_POST_METADATA = "application_posted"

_MISSING_VALUE = "_Not provided_"
_MAX_SECTION_TEXT = 2900


def status_color(status: str) -> str:
    return STATUS_COLORS.get(status, STATUS_COLORS[STATUS_PENDING])


def to_code_block(text: str) -> str:
    safe = str(text or "").replace("```", "``\u200b`")
    return f"```{safe}```"


def format_duration_hours(seconds: float) -> str:
    if seconds <= 0:
        return "0h"
    total_minutes = round(seconds / 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours <= 0:
        return f"{minutes}m"
    if minutes <= 0:
        return f"{hours}h"
    return f"{hours}h {minutes}m"


def sanitize_thread_name(name: str) -> str:
    cleaned = "".join(ch for ch in str(name or "") if ch.isalnum() or ch in " -_").strip()
    return cleaned[:90] or "Application Discussion"


def _fields_text(headers: Sequence[str], row: Sequence[str]) -> str:
    answered = extract_answered_fields(headers, row)
    if not answered:
        return _MISSING_VALUE
    text = "\n".join(f"*{key}:* {value}" for key, value in answered)
    if len(text) > _MAX_SECTION_TEXT:
        text = text[: _MAX_SECTION_TEXT - 1] + "…"
    return text


def build_application_message(
    *,
    application_id: str,
    track_label: str,
    headers: Sequence[str],
    row: Sequence[str],
    applicant_user_id: str | None = None,
    applicant_raw_value: str | None = None,
    track_key: str | None = None,
    response_key: str | None = None,
    fields_fingerprint: str | None = None,
) -> OutgoingMessage:
    """Build the reviewable message posted for a new application.

    The message carries app metadata identifying the submission so a later
    queue run can find it again in channel history.
    """

    applicant = mention_user(applicant_user_id) or applicant_raw_value or _MISSING_VALUE
    blocks: List[Dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": "New Application", "emoji": True},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Track:*\n{track_label}"},
                {"type": "mrkdwn", "text": f"*Application ID:*\n`{application_id}`"},
                {"type": "mrkdwn", "text": f"*Applicant:*\n{applicant}"},
            ],
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": _fields_text(headers, row)},
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": "React with :white_check_mark: to accept or :x: to deny.",
                }
            ],
        },
    ]
    return OutgoingMessage(
        text=f"New {track_label} application `{application_id}` submitted.",
        blocks=blocks,
        color=status_color(STATUS_PENDING),
        mention_user_ids=[applicant_user_id] if applicant_user_id else [],
        metadata_type=APPLICATION_POST_METADATA,
        metadata={
            "application_id": application_id,
            "track_key": track_key or "",
            "response_key": response_key or "",
            "fields_fingerprint": fields_fingerprint or "",
        },
    )


def build_thread_name(track_label: str, applicant_name: str) -> str:
    return sanitize_thread_name(f"{track_label} Application - {applicant_name}")


def build_decision_notice(decision: str, reason: str) -> str:
    label = "ACCEPTED" if decision == STATUS_ACCEPTED else "DENIED"
    return f":receipt: *Application {label}*\n{reason}"


def build_acceptance_blocked_notice(reason: str) -> str:
    return "\n".join(
        [
            ":warning: *Acceptance Blocked*",
            reason,
            "Application remains pending.",
            "Use `/accept <application> force` to accept anyway.",
        ]
    )


def build_acceptance_retry_notice(reason: str) -> str:
    return "\n".join(
        [
            ":warning: *Acceptance Not Applied*",
            reason,
            "Application remains pending. Run the accept command again.",
        ]
    )


def build_reopen_notice(previous_status: str, actor_id: str, reason: str | None) -> str:
    lines = [
        ":recycle: *Application Reopened*",
        f"Previous Decision: {previous_status.upper()}",
        f"By: {mention_user(actor_id)}",
    ]
    if reason:
        lines.append(f"Reason: {reason}")
    if previous_status in (STATUS_ACCEPTED, STATUS_DENIED):
        lines.append("Granted groups and sent messages from the previous decision were not reverted.")
    return "\n".join(lines)


def build_close_notice(actor_id: str, reason: str | None) -> str:
    lines = [":lock: *Application Closed*", f"By: {mention_user(actor_id)}"]
    if reason:
        lines.append(f"Reason: {reason}")
    return "\n".join(lines)


def build_forced_decision_message(decision: str, actor_id: str | None, application_id: str, rendered: str) -> str:
    label = "ACCEPTED" if decision == STATUS_ACCEPTED else "DENIED"
    return "\n".join(
        [
            f":incoming_envelope: *Forced {label} Message*",
            f"*By:* {mention_user(actor_id) or 'Unknown'}",
            f"*Application ID:* `{application_id}`",
            "",
            to_code_block(rendered),
        ]
    )


def _isoformat(value: datetime | None) -> str:
    return value.isoformat() if value else "Unknown"


def build_history_log(application: Application, *, track_label: str, application_id: str) -> str:
    """History entry posted to the log channel once an application is decided."""

    decision_label = application.status.upper()
    role_note = (
        application.approved_role_result.message
        if application.approved_role_result and application.status == STATUS_ACCEPTED
        else "No role action recorded."
    )
    announce_note = (
        application.accept_announce_result.message
        if application.accept_announce_result and application.status == STATUS_ACCEPTED
        else "No acceptance announcement action recorded."
    )
    dm_note = (
        application.deny_dm_result.message
        if application.deny_dm_result and application.status == STATUS_DENIED
        else "No denied-DM action recorded."
    )
    submitted = "\n".join(application.submitted_fields) or "_No answered fields stored_"
    return "\n".join(
        [
            ":books: *Application Closed (History Log)*",
            f"*Decision:* {decision_label}",
            f"*Track:* {track_label}",
            f"*Applicant:* {application.applicant_name or 'Unknown'}",
            f"*Row:* {application.row_index or 'Unknown'}",
            f"*Application ID:* {application_id}",
            f"*Created At:* {_isoformat(application.created_at)}",
            f"*Decided At:* {_isoformat(application.decided_at)}",
            f"*Decision Source:* {application.decision_source or 'Unknown'}",
            f"*Decided By:* {mention_user(application.decided_by) or 'Unknown'}",
            f"*Approved Role Action:* {role_note}",
            f"*Acceptance Announcement Action:* {announce_note}",
            f"*Denied DM Action:* {dm_note}",
            "",
            "*Submitted Fields:*",
            submitted,
        ]
    )


def summarize_reviewer_mentions(mentions: ReviewerMentions | None) -> str:
    if mentions is None or not (mentions.user_ids or mentions.group_ids):
        return "none configured"
    parts = [mention_group(group_id) for group_id in mentions.group_ids]
    parts.extend(mention_user(user_id) for user_id in mentions.user_ids)
    return ", ".join(parts)


def build_reminder_message(
    *,
    track_label: str,
    application_id: str,
    age_seconds: float,
    mentions: ReviewerMentions | None,
) -> str:
    return "\n".join(
        [
            ":alarm_clock: *Pending Application Reminder*",
            f"Track: {track_label}",
            f"Application ID: `{application_id}`",
            f"Age: {format_duration_hours(age_seconds)}",
            f"Reviewers: {summarize_reviewer_mentions(mentions)}",
        ]
    )

"""Individually fallible decision side effects, each returning a tagged result."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import structlog

from slack_application_engine.platform import (
    NOT_FOUND,
    PERMISSION,
    ChatPlatform,
    ChatPlatformError,
    OutgoingMessage,
    error_text,
    mention_channel,
    mention_group,
    mention_user,
)

from .fingerprint import extract_user_id, infer_applicant_user_value, parse_submitted_field_lines
from .models import Application, FailedRoleEntry, RoleGrantResult, Settings, SideEffectResult
from .templates import (
    DEFAULT_ACCEPT_ANNOUNCE_TEMPLATE,
    DEFAULT_DENY_DM_TEMPLATE,
    render_template,
)

SKIPPED_NO_ROLE_CONFIGURED = "skipped_no_role_configured"
SKIPPED_NO_USER = "skipped_no_user"
SKIPPED_NO_CHANNEL = "skipped_no_channel"
FAILED_USER_NOT_RESOLVED = "failed_user_not_resolved"
FAILED_MEMBER_NOT_FOUND = "failed_member_not_found"
FAILED_MEMBER_FETCH_TRANSIENT = "failed_member_fetch_transient"
FAILED_MISSING_PERMISSION = "failed_missing_permission"
FAILED_ALL = "failed_all"
FAILED_ERROR = "failed_error"
GRANTED = "granted"
GRANTED_PARTIAL = "granted_partial"
ALREADY_HAS_ROLE = "already_has_role"
SENT = "sent"


@dataclass(frozen=True)
class ApplicantResolution:
    raw_value: str | None
    user_id: str | None


def resolve_applicant_user(platform: ChatPlatform, raw_value: str | None) -> ApplicantResolution:
    """Turn a form cell into a workspace user id (mention, id, or lookup query)."""

    raw = str(raw_value or "").strip()
    if not raw:
        return ApplicantResolution(raw_value=None, user_id=None)
    direct = extract_user_id(raw)
    if direct:
        return ApplicantResolution(raw_value=raw, user_id=direct)
    try:
        return ApplicantResolution(raw_value=raw, user_id=platform.find_user(raw))
    except Exception as exc:
        structlog.get_logger().bind(component="side_effects").warning(
            "applicant_lookup_failed", error=error_text(exc), kind=getattr(exc, "kind", None)
        )
        return ApplicantResolution(raw_value=raw, user_id=None)


def applicant_raw_value(application: Application) -> str | None:
    headers, values = parse_submitted_field_lines(application.submitted_fields)
    return infer_applicant_user_value(headers, values)


def _summarize_grant(
    user_id: str,
    granted: Sequence[str],
    already: Sequence[str],
    failed: Sequence[FailedRoleEntry],
) -> str:
    parts: List[str] = []
    if granted:
        parts.append("granted: " + ", ".join(mention_group(group_id) for group_id in granted))
    if already:
        parts.append("already had: " + ", ".join(mention_group(group_id) for group_id in already))
    if failed:
        parts.append(
            "failed: " + ", ".join(f"{mention_group(entry.role_id)} ({entry.reason})" for entry in failed)
        )
    if not parts:
        return f"No group changes were made for {mention_user(user_id)}."
    return f"Role assignment for {mention_user(user_id)}: " + " | ".join(parts)


def _grant_failure_reason(error: Exception) -> str:
    kind = getattr(error, "kind", None)
    if kind == NOT_FOUND:
        return "user group not found"
    if kind == PERMISSION:
        return f"missing permission ({error_text(error)})"
    return f"add failed ({error_text(error)})"


def _member_fetch_transient(user_id: str, group_ids: Sequence[str], error: Exception) -> RoleGrantResult:
    """Membership could be neither confirmed nor denied; the caller should retry."""

    structlog.get_logger().bind(component="side_effects").warning(
        "member_fetch_failed", user_id=user_id, error=error_text(error)
    )
    return RoleGrantResult(
        status=FAILED_MEMBER_FETCH_TRANSIENT,
        message=(
            f"Could not verify workspace membership for {mention_user(user_id)} "
            f"due to a Slack API error ({error_text(error)}). Please try accepting again."
        ),
        role_ids=list(group_ids),
        user_id=user_id,
    )


def grant_approved_roles(
    platform: ChatPlatform,
    application: Application,
    group_ids: Sequence[str],
    *,
    track_label: str,
) -> RoleGrantResult:
    """Add the applicant to every approved user group of the track.

    Resolves the applicant from the stored form fields when no user id was
    recorded at publish time; the resolved id is written back onto
    *application*.
    """

    group_ids = list(dict.fromkeys(group_id for group_id in group_ids if group_id))
    if not group_ids:
        return RoleGrantResult(
            status=SKIPPED_NO_ROLE_CONFIGURED,
            message=f"No approved roles configured for {track_label}.",
            user_id=application.applicant_user_id,
        )

    user_id = application.applicant_user_id
    if not user_id:
        resolution = resolve_applicant_user(platform, applicant_raw_value(application))
        if resolution.raw_value is None:
            return RoleGrantResult(
                status=SKIPPED_NO_USER,
                message="No applicant user could be resolved from the form data.",
                role_ids=group_ids,
            )
        if resolution.user_id is None:
            return RoleGrantResult(
                status=FAILED_USER_NOT_RESOLVED,
                message=f"Applicant user `{resolution.raw_value}` could not be resolved in this workspace.",
                role_ids=group_ids,
            )
        user_id = resolution.user_id
        application.applicant_user_id = user_id

    try:
        member = platform.fetch_member(user_id)
    except ChatPlatformError as exc:
        if exc.kind != PERMISSION:
            return _member_fetch_transient(user_id, group_ids, exc)
        return RoleGrantResult(
            status=FAILED_MISSING_PERMISSION,
            message=f"Role assignment failed: {exc.message}",
            role_ids=group_ids,
            user_id=user_id,
        )
    except Exception as exc:
        return _member_fetch_transient(user_id, group_ids, exc)
    if member is None:
        return RoleGrantResult(
            status=FAILED_MEMBER_NOT_FOUND,
            message=f"Applicant user {mention_user(user_id)} is not in this workspace.",
            role_ids=group_ids,
            user_id=user_id,
        )

    granted: List[str] = []
    already: List[str] = []
    failed: List[FailedRoleEntry] = []
    permission_failures = 0
    for group_id in group_ids:
        try:
            if user_id in platform.fetch_user_group_members(group_id):
                already.append(group_id)
                continue
            platform.add_user_to_group(group_id, user_id)
            granted.append(group_id)
        except Exception as exc:
            if getattr(exc, "kind", None) == PERMISSION:
                permission_failures += 1
            failed.append(FailedRoleEntry(role_id=group_id, reason=_grant_failure_reason(exc)))

    if granted and not failed:
        status = GRANTED
    elif granted:
        status = GRANTED_PARTIAL
    elif already and not failed:
        status = ALREADY_HAS_ROLE
    elif failed and permission_failures == len(failed) and not already:
        status = FAILED_MISSING_PERMISSION
    else:
        status = FAILED_ALL

    return RoleGrantResult(
        status=status,
        message=_summarize_grant(user_id, granted, already, failed),
        user_id=user_id,
        role_ids=group_ids,
        granted_role_ids=granted,
        already_has_role_ids=already,
        failed_role_entries=failed,
    )


def send_accept_announcement(
    platform: ChatPlatform,
    settings: Settings,
    application: Application,
    replacements: dict,
) -> SideEffectResult:
    channel_id = settings.accept_announce_channel_id
    if not channel_id:
        return SideEffectResult(status=SKIPPED_NO_CHANNEL, message="No accept announcement channel configured.")

    content = render_template(settings.accept_announce_template, DEFAULT_ACCEPT_ANNOUNCE_TEMPLATE, replacements)
    mentions = [application.applicant_user_id] if application.applicant_user_id else []
    try:
        platform.send_message(channel_id, OutgoingMessage(text=content, mention_user_ids=mentions))
    except Exception as exc:
        return SideEffectResult(
            status=FAILED_ERROR,
            message=f"Failed posting acceptance announcement in {mention_channel(channel_id)}: {error_text(exc)}",
        )
    return SideEffectResult(status=SENT, message=f"Acceptance announcement posted in {mention_channel(channel_id)}.")


def send_deny_dm(
    platform: ChatPlatform,
    settings: Settings,
    application: Application,
    replacements: dict,
) -> SideEffectResult:
    user_id = application.applicant_user_id
    if not user_id:
        return SideEffectResult(
            status=SKIPPED_NO_USER,
            message="No applicant user could be resolved from the form data.",
        )

    content = render_template(settings.deny_dm_template, DEFAULT_DENY_DM_TEMPLATE, replacements)
    try:
        platform.send_direct_message(user_id, content)
    except Exception as exc:
        return SideEffectResult(
            status=FAILED_ERROR,
            message=f"Failed sending denied DM to {mention_user(user_id)}: {error_text(exc)}",
        )
    return SideEffectResult(status=SENT, message=f"Denied DM sent to {mention_user(user_id)}.")

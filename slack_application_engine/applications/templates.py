"""Placeholder substitution for operator-configured notification templates."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Mapping

from .models import Application

DEFAULT_ACCEPT_ANNOUNCE_TEMPLATE = "Congratulations {user}, your {track} application has been accepted!"
DEFAULT_DENY_DM_TEMPLATE = "Your application has been denied."

_PLACEHOLDER_RE = re.compile(r"\{([a-z_]+)\}")


def apply_template_placeholders(template: str | None, replacements: Mapping[str, Any]) -> str:
    """Replace every known ``{name}`` in *template*; unknown names are left untouched."""

    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in replacements:
            return match.group(0)
        value = replacements[key]
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(substitute, str(template or ""))


def build_template_replacements(
    application: Application,
    *,
    track_label: str,
    application_id: str,
    server: str,
    reason: str = "",
    decided_at: datetime | None = None,
) -> Dict[str, str]:
    user_id = application.applicant_user_id or ""
    decided = decided_at or application.decided_at
    role_result = application.approved_role_result
    return {
        "user": f"<@{user_id}>" if user_id else "",
        "user_id": user_id,
        "applicant_name": application.applicant_name or "Applicant",
        "track": track_label,
        "application_id": application_id,
        "job_id": application.job_id or "Unknown",
        "server": server or "Unknown Workspace",
        "decision_source": application.decision_source or "Unknown",
        "reason": reason or "",
        "role_result": role_result.message if role_result else "",
        "decided_at": decided.isoformat() if decided else "",
    }


def render_template(template: str | None, fallback: str, replacements: Mapping[str, Any]) -> str:
    rendered = apply_template_placeholders(template, replacements).strip()
    if rendered:
        return rendered
    return apply_template_placeholders(fallback, replacements).strip()

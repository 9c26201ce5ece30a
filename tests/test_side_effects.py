"""Tests for applicant resolution, group grants and notifications."""

from slack_application_engine.applications.models import Settings
from slack_application_engine.applications.side_effects import (
    ALREADY_HAS_ROLE,
    FAILED_ALL,
    FAILED_ERROR,
    FAILED_MEMBER_FETCH_TRANSIENT,
    FAILED_MEMBER_NOT_FOUND,
    FAILED_MISSING_PERMISSION,
    FAILED_USER_NOT_RESOLVED,
    GRANTED,
    GRANTED_PARTIAL,
    SENT,
    SKIPPED_NO_CHANNEL,
    SKIPPED_NO_ROLE_CONFIGURED,
    SKIPPED_NO_USER,
    resolve_applicant_user,
    grant_approved_roles,
    send_accept_announcement,
    send_deny_dm,
)
from slack_application_engine.platform import NOT_FOUND, PERMISSION, RATE_LIMITED, ChatPlatformError

from conftest import make_application


def test_resolve_applicant_prefers_embedded_ids(fake_platform):
    fake_platform.lookup["ada@example.com"] = "U0AAAAAAA"

    assert resolve_applicant_user(fake_platform, "<@U0BBBBBBB>").user_id == "U0BBBBBBB"
    assert resolve_applicant_user(fake_platform, "ada@example.com").user_id == "U0AAAAAAA"
    assert resolve_applicant_user(fake_platform, "  ").raw_value is None


def test_resolve_applicant_survives_lookup_errors(fake_platform):
    fake_platform.fail("find_user", ChatPlatformError(PERMISSION, "missing_scope"))

    resolution = resolve_applicant_user(fake_platform, "ada@example.com")

    assert resolution.raw_value == "ada@example.com"
    assert resolution.user_id is None


def test_grant_skips_without_configured_groups(fake_platform):
    result = grant_approved_roles(fake_platform, make_application(), [], track_label="Tester")

    assert result.status == SKIPPED_NO_ROLE_CONFIGURED


def test_grant_adds_missing_groups(fake_platform):
    fake_platform.add_member("U_APPLICANT")
    fake_platform.groups["S_HAS"] = {"U_APPLICANT"}

    result = grant_approved_roles(fake_platform, make_application(), ["S_NEW", "S_HAS", "S_NEW"], track_label="Tester")

    assert result.status == GRANTED
    assert result.granted_role_ids == ["S_NEW"]
    assert result.already_has_role_ids == ["S_HAS"]
    assert fake_platform.group_adds == [("S_NEW", "U_APPLICANT")]


def test_grant_reports_already_has_role(fake_platform):
    fake_platform.add_member("U_APPLICANT")
    fake_platform.groups["S1"] = {"U_APPLICANT"}

    assert grant_approved_roles(fake_platform, make_application(), ["S1"], track_label="Tester").status == ALREADY_HAS_ROLE


def test_grant_partial_and_failed_all(fake_platform):
    fake_platform.add_member("U_APPLICANT")
    fake_platform.fail("add_user_to_group", ChatPlatformError(NOT_FOUND, "no_such_subteam"))

    partial = grant_approved_roles(fake_platform, make_application(), ["S_GONE", "S_OK"], track_label="Tester")

    assert partial.status == GRANTED_PARTIAL
    assert partial.failed_role_entries[0].role_id == "S_GONE"
    assert partial.failed_role_entries[0].reason == "user group not found"

    fake_platform.fail("add_user_to_group", ChatPlatformError(NOT_FOUND, "no_such_subteam"))
    assert grant_approved_roles(fake_platform, make_application(), ["S_X"], track_label="Tester").status == FAILED_ALL


def test_grant_missing_permission_when_every_failure_is_permission(fake_platform):
    fake_platform.add_member("U_APPLICANT")
    fake_platform.fail("add_user_to_group", ChatPlatformError(PERMISSION, "missing_scope"), times=2)

    result = grant_approved_roles(fake_platform, make_application(), ["S1", "S2"], track_label="Tester")

    assert result.status == FAILED_MISSING_PERMISSION


def test_grant_member_not_found(fake_platform):
    result = grant_approved_roles(fake_platform, make_application(), ["S1"], track_label="Tester")

    assert result.status == FAILED_MEMBER_NOT_FOUND
    assert result.user_id == "U_APPLICANT"


def test_grant_member_lookup_error_is_transient(fake_platform):
    fake_platform.fail("fetch_member", ChatPlatformError(RATE_LIMITED, "ratelimited"))
    fake_platform.fail("fetch_member", ConnectionResetError("connection reset by peer"))
    fake_platform.add_member("U_APPLICANT")

    rate_limited = grant_approved_roles(fake_platform, make_application(), ["S1"], track_label="Tester")
    reset = grant_approved_roles(fake_platform, make_application(), ["S1"], track_label="Tester")

    assert rate_limited.status == FAILED_MEMBER_FETCH_TRANSIENT
    assert rate_limited.user_id == "U_APPLICANT"
    assert "try accepting again" in rate_limited.message
    assert reset.status == FAILED_MEMBER_FETCH_TRANSIENT
    assert "ConnectionResetError" in reset.message
    assert fake_platform.group_adds == []


def test_grant_member_lookup_permission_error(fake_platform):
    fake_platform.fail("fetch_member", ChatPlatformError(PERMISSION, "missing_scope"))

    result = grant_approved_roles(fake_platform, make_application(), ["S1"], track_label="Tester")

    assert result.status == FAILED_MISSING_PERMISSION
    assert "missing_scope" in result.message


def test_grant_resolves_user_from_submitted_fields(fake_platform):
    fake_platform.lookup["ada@example.com"] = "U0AAAAAAA"
    fake_platform.add_member("U0AAAAAAA")
    application = make_application(applicant_user_id=None, submitted_fields=["**Email:** ada@example.com"])

    result = grant_approved_roles(fake_platform, application, ["S1"], track_label="Tester")

    assert result.status == GRANTED
    assert application.applicant_user_id == "U0AAAAAAA"


def test_grant_unresolvable_and_missing_user(fake_platform):
    unresolved = make_application(applicant_user_id=None, submitted_fields=["**Email:** ghost@example.com"])
    missing = make_application(applicant_user_id=None, submitted_fields=["**Name:** Ada"])

    assert grant_approved_roles(fake_platform, unresolved, ["S1"], track_label="Tester").status == FAILED_USER_NOT_RESOLVED
    assert grant_approved_roles(fake_platform, missing, ["S1"], track_label="Tester").status == SKIPPED_NO_USER


def test_accept_announcement(fake_platform):
    application = make_application()
    replacements = {"user": "<@U_APPLICANT>", "track": "Tester"}

    skipped = send_accept_announcement(fake_platform, Settings(), application, replacements)
    sent = send_accept_announcement(
        fake_platform, Settings(accept_announce_channel_id="C_ANNOUNCE"), application, replacements
    )

    assert skipped.status == SKIPPED_NO_CHANNEL
    assert sent.status == SENT
    channel_id, message, _ = fake_platform.sent[-1]
    assert channel_id == "C_ANNOUNCE"
    assert message.text == "Congratulations <@U_APPLICANT>, your Tester application has been accepted!"
    assert list(message.mention_user_ids) == ["U_APPLICANT"]


def test_deny_dm_failures_are_reported(fake_platform):
    fake_platform.fail("send_direct_message", ChatPlatformError(PERMISSION, "cannot_dm_bot"))

    failed = send_deny_dm(fake_platform, Settings(), make_application(), {})
    sent = send_deny_dm(fake_platform, Settings(deny_dm_template="Sorry {user_id}"), make_application(), {"user_id": "U_APPLICANT"})
    skipped = send_deny_dm(fake_platform, Settings(), make_application(applicant_user_id=None), {})

    assert failed.status == FAILED_ERROR
    assert "cannot_dm_bot" in failed.message
    assert sent.status == SENT
    assert fake_platform.direct_messages == [("U_APPLICANT", "Sorry U_APPLICANT")]
    assert skipped.status == SKIPPED_NO_USER


def test_notifications_report_transport_errors(fake_platform):
    fake_platform.fail("send_message", TimeoutError("read timed out"))
    fake_platform.fail("send_direct_message", ConnectionResetError("connection reset by peer"))

    announcement = send_accept_announcement(
        fake_platform, Settings(accept_announce_channel_id="C_ANNOUNCE"), make_application(), {}
    )
    dm = send_deny_dm(fake_platform, Settings(), make_application(), {})

    assert announcement.status == FAILED_ERROR
    assert "TimeoutError: read timed out" in announcement.message
    assert dm.status == FAILED_ERROR
    assert "ConnectionResetError" in dm.message


def test_grant_reports_transport_error_per_group(fake_platform):
    fake_platform.add_member("U_APPLICANT")
    fake_platform.fail("add_user_to_group", ConnectionResetError("connection reset by peer"))

    result = grant_approved_roles(fake_platform, make_application(), ["S1", "S2"], track_label="Tester")

    assert result.status == GRANTED_PARTIAL
    assert result.granted_role_ids == ["S2"]
    assert result.failed_role_entries[0].role_id == "S1"
    assert "ConnectionResetError" in result.failed_role_entries[0].reason

"""Tests for review command parsing and authorization helpers."""

import pytest

from slack_application_engine.actions import (
    ACCEPT_COMMAND,
    CLOSE_COMMAND,
    DENY_COMMAND,
    CommandContext,
    is_message_ts,
    is_user_authorized,
    normalize_target,
    parse_review_command,
)


def test_parse_accept_with_force_and_reason():
    context = parse_review_command(ACCEPT_COMMAND, "TESTER-4 force joined under another account")

    assert context == CommandContext(
        command=ACCEPT_COMMAND, target="TESTER-4", force=True, reason="joined under another account"
    )


def test_parse_deny_without_force():
    context = parse_review_command(DENY_COMMAND, "1714560000.000001 not a fit")

    assert context.force is False
    assert context.reason == "not a fit"


def test_force_is_only_a_flag_for_decision_commands():
    context = parse_review_command(CLOSE_COMMAND, "TESTER-4 force")

    assert context.force is False
    assert context.reason == "force"


def test_permalink_targets_become_message_ts():
    link = "<https://acme.slack.com/archives/C0123ABC/p1714560000000001>"

    assert normalize_target(link) == "1714560000.000001"
    assert is_message_ts(normalize_target(link)) is True
    assert is_message_ts("TESTER-4") is False


@pytest.mark.parametrize("text", ["", "   "])
def test_parse_requires_target(text):
    with pytest.raises(ValueError):
        parse_review_command(ACCEPT_COMMAND, text)


def test_is_user_authorized_true():
    allowed = ["U1", "U2", " U3 "]
    assert is_user_authorized("U3", allowed) is True


def test_is_user_authorized_false():
    allowed = ["U1", "U2"]
    assert is_user_authorized("U9", allowed) is False


def test_empty_allow_list_allows_everyone():
    assert is_user_authorized("U9", []) is True

"""Tests for the Flask application factory and Slack handlers."""

from pathlib import Path
import sys
import threading
import time
from types import SimpleNamespace

import pytest
from flask import Response
from slack_sdk.signature import SignatureVerifier
from structlog.testing import capture_logs

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:  # pragma: no cover
    sys.path.insert(0, str(ROOT))

import app as app_module  # noqa: E402
from slack_application_engine.applications.models import Settings, State  # noqa: E402
from slack_application_engine.applications.storage import MemoryStateStore  # noqa: E402
from slack_application_engine.applications.workflow import (  # noqa: E402
    ALREADY_DECIDED,
    MEMBER_FETCH_TRANSIENT_ERROR,
    UNKNOWN_APPLICATION,
    TransitionResult,
)
from slack_application_engine.engine import ApplicationEngine  # noqa: E402

from conftest import make_application  # noqa: E402


MESSAGE_ID = "1714560000.000001"


class DummyHandler:
    handled = threading.Event()

    def __init__(self, bolt_app):
        self.bolt_app = bolt_app

    def handle(self, _request):
        DummyHandler.handled.set()
        return Response("ok", status=200)


class Responder:
    def __init__(self):
        self.acked = 0
        self.messages = []

    def ack(self):
        self.acked += 1

    def respond(self, **kwargs):
        self.messages.append(kwargs)


@pytest.fixture
def engine(fake_platform, registry, clock):
    state = State(
        applications={MESSAGE_ID: make_application(MESSAGE_ID)},
        threads={MESSAGE_ID: MESSAGE_ID},
        settings=Settings(channels={"tester": "C_TESTER"}),
    )
    return ApplicationEngine(MemoryStateStore(state), fake_platform, registry=registry, clock=clock)


@pytest.fixture
def flask_app(database, monkeypatch, engine):
    DummyHandler.handled = threading.Event()
    monkeypatch.setattr(app_module, "SlackRequestHandler", DummyHandler)
    return app_module.create_app(engine, start_poller=False)


def _signed_headers(body: str, timestamp: str) -> dict[str, str]:
    signature = SignatureVerifier("secret").generate_signature(timestamp=timestamp, body=body)
    return {
        app_module.SLACK_SIGNATURE_HEADER: signature,
        app_module.SLACK_TIMESTAMP_HEADER: timestamp,
    }


def test_slack_events_route_uses_handler(flask_app):
    body = "{}"
    headers = _signed_headers(body, str(int(time.time())))

    response = flask_app.test_client().post(
        "/slack/events", data=body, content_type="application/json", headers=headers
    )

    assert response.status_code == 200
    assert response.data == b""
    assert DummyHandler.handled.wait(timeout=2) is True


def test_invalid_signature_returns_unauthorised(flask_app):
    response = flask_app.test_client().post(
        "/slack/events",
        data="{}",
        content_type="application/json",
        headers={
            app_module.SLACK_SIGNATURE_HEADER: "v0=invalid",
            app_module.SLACK_TIMESTAMP_HEADER: str(int(time.time())),
        },
    )

    assert response.status_code == 401
    assert response.get_json()["error"] == "invalid_signature"
    assert DummyHandler.handled.is_set() is False


def test_stale_timestamp_rejected(flask_app):
    body = "{}"
    headers = _signed_headers(body, str(int(time.time()) - 60 * 10))

    response = flask_app.test_client().post(
        "/slack/events", data=body, content_type="application/json", headers=headers
    )

    assert response.status_code == 401


def test_healthz_reports_database_and_poller(flask_app):
    response = flask_app.test_client().get("/healthz")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["ok"] is True
    assert payload["db"] == "up"
    assert payload["poller"] == "stopped"
    assert payload["queue_busy"] is False
    assert flask_app.config["ENGINE"] is not None


def test_healthz_returns_503_when_database_is_down(flask_app, monkeypatch):
    def broken_check():
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(app_module, "check_database", broken_check)

    response = flask_app.test_client().get("/healthz")

    assert response.status_code == 503
    assert response.get_json()["db_error"] == "database unavailable"


def test_describe_transition():
    ok = TransitionResult(ok=True, status="accepted", previous_status="pending", application=make_application())
    decided = TransitionResult(ok=False, reason=ALREADY_DECIDED, status="denied")
    unknown = TransitionResult(ok=False, reason=UNKNOWN_APPLICATION)
    other = TransitionResult(ok=False, reason="invalid_decision")

    assert app_module.describe_transition("x", "accepted", ok) == "Application `TESTER-1` accepted (was pending)."
    assert app_module.describe_transition("x", "accepted", decided) == "Application `x` is already denied."
    assert app_module.describe_transition("x", "closed", unknown) == "No application matches `x`."
    assert app_module.describe_transition("x", "closed", other) == "Could not update `x`: invalid_decision."
    transient = TransitionResult(ok=False, reason=MEMBER_FETCH_TRANSIENT_ERROR, status="pending")
    assert "run the command again" in app_module.describe_transition("x", "accepted", transient)


def _settings(admins=("U_ADMIN",)):
    return SimpleNamespace(admin_user_ids=list(admins), bot_user_id="U_BOT")


def test_review_command_denies_application(engine):
    responder = Responder()
    command = {"command": "/deny", "user_id": "U_ADMIN", "channel_id": "C_ADMIN", "text": "TESTER-1 Too early"}

    app_module._handle_review_command(responder.ack, command, responder.respond, engine, _settings())

    assert responder.acked == 1
    assert responder.messages == [
        {"response_type": "ephemeral", "text": "Application `TESTER-1` denied (was pending)."}
    ]
    application = engine.store.read().applications[MESSAGE_ID]
    assert application.status == "denied"
    assert application.decision_reason.endswith("Reviewer reason: Too early")


def test_review_command_rejects_unauthorised_users(engine):
    responder = Responder()
    command = {"command": "/close", "user_id": "U_RANDOM", "text": MESSAGE_ID}

    app_module._handle_review_command(responder.ack, command, responder.respond, engine, _settings())

    assert responder.messages[0]["text"] == "You are not allowed to review applications."
    assert engine.store.read().applications[MESSAGE_ID].status == "pending"


def test_review_command_reports_usage(engine):
    responder = Responder()
    command = {"command": "/reopen", "user_id": "U_ADMIN", "text": "  "}

    app_module._handle_review_command(responder.ack, command, responder.respond, engine, _settings())

    assert responder.messages[0]["text"].startswith("Usage: /reopen")


def test_close_then_reopen_commands(engine):
    responder = Responder()
    link = f"https://acme.slack.com/archives/C0TESTER/p{MESSAGE_ID.replace('.', '')}"

    app_module._handle_review_command(
        responder.ack, {"command": "/close", "user_id": "U_ADMIN", "text": link}, responder.respond, engine, _settings()
    )
    app_module._handle_review_command(
        responder.ack, {"command": "/reopen", "user_id": "U_ADMIN", "text": "TESTER-1"}, responder.respond, engine, _settings()
    )

    assert [message["text"] for message in responder.messages] == [
        "Application `TESTER-1` closed (was pending).",
        "Application `TESTER-1` reopened (was closed).",
    ]


def test_queue_command_reports_drain(engine):
    responder = Responder()

    app_module._handle_queue_command(
        responder.ack, {"command": "/queue", "user_id": "U_ADMIN"}, responder.respond, engine, _settings()
    )

    assert responder.messages[0]["text"] == "Queue run: posted 0, remaining 0."


def test_reaction_events_trigger_vote_evaluation(engine, fake_platform):
    fake_platform.add_member("U_R1", channel_id="C_TESTER")
    event = {"reaction": "white_check_mark", "user": "U_R1", "item": {"type": "message", "ts": MESSAGE_ID}}

    with capture_logs() as logs:
        app_module._handle_reaction_event(event, engine, "U_BOT")
        app_module._handle_reaction_event({**event, "reaction": "tada"}, engine, "U_BOT")
        app_module._handle_reaction_event({**event, "user": "U_BOT"}, engine, "U_BOT")

    received = [entry for entry in logs if entry["event"] == "vote_reaction_received"]
    assert len(received) == 1
    assert received[0]["message_id"] == MESSAGE_ID
    assert ("fetch_channel_members", ("C_TESTER",)) in fake_platform.calls

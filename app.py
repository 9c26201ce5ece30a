"""Application entry point for the Slack Application Engine."""

from __future__ import annotations

from pathlib import Path
from uuid import uuid4

from flask import Flask, copy_current_request_context, jsonify, request
from slack_bolt import App as SlackApp
from slack_bolt.adapter.flask import SlackRequestHandler
from slack_sdk.signature import SignatureVerifier
import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

from slack_application_engine.actions import (
    CLOSE_COMMAND,
    DECISION_COMMANDS,
    QUEUE_COMMAND,
    REOPEN_COMMAND,
    is_user_authorized,
    parse_review_command,
)
from slack_application_engine.applications.storage import SqlStateStore
from slack_application_engine.applications.tracks import TrackRegistry
from slack_application_engine.applications.votes import ACCEPT_EMOJI, DENY_EMOJI
from slack_application_engine.applications.workflow import (
    ALREADY_CLOSED,
    ALREADY_DECIDED,
    ALREADY_PENDING,
    MEMBER_FETCH_TRANSIENT_ERROR,
    MISSING_MEMBER_NOT_IN_GUILD,
    UNKNOWN_APPLICATION,
    UNRESOLVED_APPLICANT_USER,
    TransitionResult,
)
from slack_application_engine.background import BackgroundPoller, run_async
from slack_application_engine.config import AppSettings, get_settings
from slack_application_engine.db import check_database, create_schema
from slack_application_engine.engine import ApplicationEngine
from slack_application_engine.logging_config import configure_logging
from slack_application_engine.slack_client import SlackClient
from slack_application_engine.slack_platform import SlackChatPlatform
from slack_application_engine.sources import GoogleSheetsResponseSource


SLACK_SIGNATURE_HEADER = "X-Slack-Signature"
SLACK_TIMESTAMP_HEADER = "X-Slack-Request-Timestamp"

TRANSITION_FAILURE_TEXT = {
    UNKNOWN_APPLICATION: "No application matches `{target}`.",
    ALREADY_DECIDED: "Application `{target}` is already {status}.",
    ALREADY_PENDING: "Application `{target}` is already pending.",
    ALREADY_CLOSED: "Application `{target}` is already closed.",
    MISSING_MEMBER_NOT_IN_GUILD: (
        "The applicant is not a member of this workspace. Re-run with `force` to accept anyway."
    ),
    UNRESOLVED_APPLICANT_USER: "The applicant's Slack user could not be resolved; acceptance is blocked.",
    MEMBER_FETCH_TRANSIENT_ERROR: "Slack could not confirm the applicant's membership for `{target}`; run the command again shortly.",
}


def _create_bolt_app(settings: AppSettings) -> SlackApp:
    """Initialise the Slack Bolt application using validated settings."""

    return SlackApp(
        token=settings.bot_token,
        signing_secret=settings.signing_secret,
        token_verification_enabled=False,
    )


def _register_error_handlers(flask_app: Flask) -> None:
    """Register a JSON error handler that attaches a trace identifier."""

    @flask_app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):  # type: ignore[override]
        trace_id = str(uuid4())
        flask_app.logger.exception(
            "Unhandled application error", extra={"trace_id": trace_id}, exc_info=error
        )
        response = jsonify({"error": "internal_server_error", "trace_id": trace_id})
        response.status_code = 500
        return response


def build_engine(settings: AppSettings, *, slack_client: SlackClient | None = None) -> ApplicationEngine:
    """Wire the SQL state store, Slack platform and response sheet into an engine."""

    create_schema()
    registry = TrackRegistry(default_track_key=settings.default_track_key)
    client = slack_client or SlackClient(token=settings.bot_token)
    source = None
    if settings.spreadsheet_id and settings.google_api_key:
        source = GoogleSheetsResponseSource(
            spreadsheet_id=settings.spreadsheet_id,
            api_key=settings.google_api_key,
            sheet_name=settings.sheet_name,
        )
    return ApplicationEngine(
        SqlStateStore(registry=registry),
        SlackChatPlatform(client),
        source,
        registry=registry,
        bot_user_id=settings.bot_user_id,
    )


def describe_transition(target: str, verb: str, result: TransitionResult) -> str:
    if result.ok:
        application_id = result.application.application_id if result.application else target
        return f"Application `{application_id}` {verb} (was {result.previous_status})."
    template = TRANSITION_FAILURE_TEXT.get(result.reason or "", "Could not update `{target}`: {reason}.")
    return template.format(target=target, status=result.status, reason=result.reason)


def _handle_reaction_event(event, engine: ApplicationEngine, bot_user_id: str | None) -> None:
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    try:
        item = (event or {}).get("item") or {}
        if item.get("type") != "message" or event.get("reaction") not in (ACCEPT_EMOJI, DENY_EMOJI):
            return
        if bot_user_id and event.get("user") == bot_user_id:
            return
        message_id = item.get("ts")
        if not message_id:
            return
        structlog.get_logger().bind(trace_id=trace_id).info(
            "vote_reaction_received", message_id=message_id, reaction=event.get("reaction"), user_id=event.get("user")
        )
        engine.evaluate_votes(message_id)
    finally:
        unbind_contextvars("trace_id")


def _handle_review_command(ack, command, respond, engine: ApplicationEngine, settings: AppSettings) -> None:
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)
    try:
        ack()
        name = command.get("command") or ""
        user_id = command.get("user_id") or ""
        channel_id = command.get("channel_id")
        log = log.bind(command=name, user_id=user_id)
        log.info("slash_command_received", text=command.get("text"))

        if not is_user_authorized(user_id, settings.admin_user_ids):
            respond(response_type="ephemeral", text="You are not allowed to review applications.")
            return
        try:
            context = parse_review_command(name, command.get("text") or "")
        except ValueError as exc:
            respond(response_type="ephemeral", text=str(exc))
            return

        if name in DECISION_COMMANDS:
            result = engine.finalize(
                context.target,
                DECISION_COMMANDS[name],
                user_id,
                reason=context.reason,
                force=context.force,
                channel_id=channel_id,
            )
            verb = DECISION_COMMANDS[name]
        elif name == REOPEN_COMMAND:
            result = engine.reopen(context.target, user_id, reason=context.reason, channel_id=channel_id)
            verb = "reopened"
        elif name == CLOSE_COMMAND:
            result = engine.close(context.target, user_id, reason=context.reason, channel_id=channel_id)
            verb = "closed"
        else:
            respond(response_type="ephemeral", text=f"Unsupported command `{name}`.")
            return

        log.info("slash_command_completed", ok=result.ok, reason=result.reason)
        respond(response_type="ephemeral", text=describe_transition(context.target, verb, result))
    finally:
        unbind_contextvars("trace_id")


def _handle_queue_command(ack, command, respond, engine: ApplicationEngine, settings: AppSettings) -> None:
    ack()
    if not is_user_authorized(command.get("user_id") or "", settings.admin_user_ids):
        respond(response_type="ephemeral", text="You are not allowed to run the queue.")
        return
    result = engine.drain_queue()
    if result.busy:
        respond(response_type="ephemeral", text="The queue is already being processed.")
        return
    summary = f"Queue run: posted {result.posted}, remaining {result.remaining}."
    if result.failed_job_id:
        summary += f" Halted on `{result.failed_job_id}`: {result.failed_error}"
    respond(response_type="ephemeral", text=summary)


def _register_event_handlers(bolt_app: SlackApp, engine: ApplicationEngine, settings: AppSettings) -> None:
    @bolt_app.event("reaction_added")
    def handle_reaction_added(event):
        _handle_reaction_event(event, engine, settings.bot_user_id)

    @bolt_app.event("reaction_removed")
    def handle_reaction_removed(event):
        _handle_reaction_event(event, engine, settings.bot_user_id)

    @bolt_app.event("member_joined_channel")
    def handle_member_joined(event):
        engine.invalidate_reviewers((event or {}).get("channel"))

    @bolt_app.event("member_left_channel")
    def handle_member_left(event):
        engine.invalidate_reviewers((event or {}).get("channel"))

    @bolt_app.event("subteam_members_changed")
    def handle_subteam_members_changed(event):
        engine.invalidate_reviewers()


def _register_command_handlers(bolt_app: SlackApp, engine: ApplicationEngine, settings: AppSettings) -> None:
    for command_name in (*DECISION_COMMANDS, REOPEN_COMMAND, CLOSE_COMMAND):

        @bolt_app.command(command_name)
        def handle_review(ack, command, respond):
            _handle_review_command(ack, command, respond, engine, settings)

    @bolt_app.command(QUEUE_COMMAND)
    def handle_queue(ack, command, respond):
        _handle_queue_command(ack, command, respond, engine, settings)


def _load_version() -> str:
    version_file = Path(__file__).resolve().parent / "VERSION"
    if version_file.exists():
        return version_file.read_text(encoding="utf-8").strip()
    return "unknown"


def create_app(engine: ApplicationEngine | None = None, *, start_poller: bool = True) -> Flask:
    """Create and configure the Flask application."""

    settings = get_settings()
    configure_logging(settings.log_level, renderer=settings.log_format)
    engine = engine or build_engine(settings)
    bolt_app = _create_bolt_app(settings)
    handler = SlackRequestHandler(bolt_app)
    verifier = SignatureVerifier(settings.signing_secret)

    flask_app = Flask(__name__)
    flask_app.config["APP_VERSION"] = _load_version()
    flask_app.config["ENGINE"] = engine
    flask_app.logger.setLevel("INFO")
    _register_error_handlers(flask_app)
    _register_event_handlers(bolt_app, engine, settings)
    _register_command_handlers(bolt_app, engine, settings)

    poller = BackgroundPoller(engine.poll_once, interval_seconds=settings.poll_interval_seconds)
    flask_app.config["POLLER"] = poller
    if start_poller:
        poller.start()

    @flask_app.route("/slack/events", methods=["POST"])
    def slack_events():
        raw_body = request.get_data(as_text=True)
        if not verifier.is_valid(
            body=raw_body,
            timestamp=request.headers.get(SLACK_TIMESTAMP_HEADER, ""),
            signature=request.headers.get(SLACK_SIGNATURE_HEADER, ""),
        ):
            response = jsonify({"error": "invalid_signature"})
            response.status_code = 401
            return response

        trace_id = str(uuid4())

        @copy_current_request_context
        def process_request():
            handler.handle(request)

        run_async(process_request, trace_id=trace_id)
        return "", 200

    @flask_app.route("/healthz", methods=["GET"])
    def healthz():
        health: dict[str, object] = {"ok": True}
        health["version"] = flask_app.config.get("APP_VERSION", "unknown")
        health["poller"] = "running" if poller.running else "stopped"
        health["queue_busy"] = engine.drainer.busy

        try:
            check_database()
            health["db"] = "up"
        except Exception as exc:
            health["db"] = "down"
            health["db_error"] = str(exc)
            health["ok"] = False

        status = 200 if health["ok"] else 503
        return jsonify(health), status

    return flask_app


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    application = create_app()
    application.run(host="0.0.0.0", port=3000, debug=False)

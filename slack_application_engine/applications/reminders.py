"""Pending application reminders and the daily review digest."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Dict

import structlog

from slack_application_engine.platform import ChatPlatform, OutgoingMessage, error_text

from .messages import build_reminder_message
from .models import STATUS_ACCEPTED, STATUS_DENIED, STATUS_PENDING, Application, State
from .queue import application_display_id
from .storage import StateStore
from .tracks import TrackRegistry


@dataclass(frozen=True)
class ReminderResult:
    sent: int = 0
    failed: int = 0


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _age_seconds(application: Application, now: datetime) -> float | None:
    if application.created_at is None:
        return None
    return (now - _as_utc(application.created_at)).total_seconds()


def send_pending_reminders(
    store: StateStore,
    platform: ChatPlatform,
    registry: TrackRegistry,
    *,
    now: datetime | None = None,
    state_lock: threading.RLock | None = None,
) -> ReminderResult:
    """Nudge reviewers about pending applications older than the configured threshold."""

    now = now or datetime.now(UTC)
    log = structlog.get_logger().bind(component="reminders")
    with state_lock or threading.RLock():
        state = store.read()
        settings = state.settings.reminders
        if not settings.enabled:
            return ReminderResult()

        threshold = settings.threshold_hours * 3600
        repeat = settings.repeat_hours * 3600
        sent = failed = 0
        for application in state.applications.values():
            if application.status != STATUS_PENDING:
                continue
            age = _age_seconds(application, now)
            if age is None or age < threshold:
                continue
            if application.last_reminder_at is not None:
                if (now - _as_utc(application.last_reminder_at)).total_seconds() < repeat:
                    continue

            mentions = state.settings.reviewer_mentions.get(application.track_key)
            text = build_reminder_message(
                track_label=registry.label(application.track_key),
                application_id=application_display_id(registry, application),
                age_seconds=age,
                mentions=mentions,
            )
            try:
                if application.thread_id:
                    platform.reply_to_message(application.channel_id, application.thread_id, text)
                else:
                    platform.send_message(
                        application.channel_id,
                        OutgoingMessage(
                            text=text,
                            mention_user_ids=mentions.user_ids if mentions else (),
                            mention_group_ids=mentions.group_ids if mentions else (),
                        ),
                    )
            except Exception as exc:
                failed += 1
                log.warning("reminder_failed", message_id=application.message_id, error=error_text(exc))
                continue
            application.last_reminder_at = now
            application.reminder_count += 1
            sent += 1

        if sent:
            store.write(state)
            log.info("reminders_sent", sent=sent, failed=failed)
        return ReminderResult(sent=sent, failed=failed)


def _date_key(value: datetime | None) -> str | None:
    return _as_utc(value).strftime("%Y-%m-%d") if value else None


def build_daily_digest(state: State, registry: TrackRegistry, target_date: str, now: datetime) -> str:
    created: Dict[str, int] = {key: 0 for key in registry.track_keys}
    accepted: Dict[str, int] = dict(created)
    denied: Dict[str, int] = dict(created)
    stale = 0
    stale_seconds = state.settings.reminders.threshold_hours * 3600

    for application in state.applications.values():
        track_key = registry.normalize_track_key(application.track_key) or registry.default_track_key
        if track_key not in created:
            continue
        if _date_key(application.created_at) == target_date:
            created[track_key] += 1
        decided_on = _date_key(application.decided_at)
        if application.status == STATUS_ACCEPTED and decided_on == target_date:
            accepted[track_key] += 1
        if application.status == STATUS_DENIED and decided_on == target_date:
            denied[track_key] += 1
        if application.status == STATUS_PENDING:
            age = _age_seconds(application, now)
            if age is not None and age >= stale_seconds:
                stale += 1

    lines = [f":spiral_calendar_pad: *Daily Application Summary ({target_date} UTC)*"]
    for track_key in registry.track_keys:
        lines.append(
            f"{registry.label(track_key)}: new={created[track_key]} | "
            f"accepted={accepted[track_key]} | denied={denied[track_key]}"
        )
    lines.append(f"Stale Pending (>={state.settings.reminders.threshold_hours}h): {stale}")
    return "\n".join(lines)


def send_daily_digest(
    store: StateStore,
    platform: ChatPlatform,
    registry: TrackRegistry,
    *,
    now: datetime | None = None,
    state_lock: threading.RLock | None = None,
) -> bool:
    """Post yesterday's per-track counts once per day after the configured UTC hour."""

    now = _as_utc(now or datetime.now(UTC))
    with state_lock or threading.RLock():
        state = store.read()
        digest = state.settings.daily_digest
        if not digest.enabled or now.hour < digest.hour_utc:
            return False
        target_date = (now - timedelta(days=1)).strftime("%Y-%m-%d")
        if digest.last_digest_date == target_date:
            return False

        channel_id = state.settings.log_channel_id or next(
            (channel for channel in state.settings.channels.values() if channel), None
        )
        if not channel_id:
            return False

        text = build_daily_digest(state, registry, target_date, now)
        try:
            platform.send_message(channel_id, OutgoingMessage(text=text))
        except Exception as exc:
            structlog.get_logger().bind(component="reminders").warning("daily_digest_failed", error=error_text(exc))
            return False
        digest.last_digest_date = target_date
        store.write(state)
        return True

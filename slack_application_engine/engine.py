"""Facade wiring the queue, processor, vote workflow and reminders together."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

import structlog

from .applications.migrations import record_control_action
from .applications.models import STATUS_ACCEPTED, STATUS_DENIED, State
from .applications.processor import DrainResult, QueueDrainer
from .applications.queue import IngestResult, application_display_id, ingest_rows
from .applications.reminders import ReminderResult, send_daily_digest, send_pending_reminders
from .applications.storage import StateStore
from .applications.tracks import TrackRegistry
from .applications.votes import ReviewerDirectory
from .applications.workflow import (
    SOURCE_FORCE,
    UNKNOWN_APPLICATION,
    DecisionWorkflow,
    TransitionResult,
    VoteEvaluation,
)
from .models import ResponseSourceError
from .platform import ChatPlatform
from .sources import ResponseSource


@dataclass(frozen=True)
class PollResult:
    ingest: IngestResult | None = None
    drain: DrainResult | None = None
    reminders: ReminderResult | None = None
    digest_sent: bool = False
    source_error: str | None = None


class ApplicationEngine:
    """Entry point used by the Slack handlers and the background poller.

    All state mutations go through one shared re-entrant lock; the queue
    drain additionally holds its own single-flight lock.
    """

    def __init__(
        self,
        store: StateStore,
        platform: ChatPlatform,
        source: ResponseSource | None = None,
        *,
        registry: TrackRegistry | None = None,
        bot_user_id: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.platform = platform
        self.source = source
        self.registry = registry or TrackRegistry()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._state_lock = threading.RLock()
        self.reviewers = ReviewerDirectory(platform)
        self.drainer = QueueDrainer(
            store, platform, self.registry, state_lock=self._state_lock, clock=self._clock
        )
        self.workflow = DecisionWorkflow(
            store,
            platform,
            self.registry,
            self.reviewers,
            state_lock=self._state_lock,
            bot_user_id=bot_user_id,
            clock=self._clock,
        )

    def _read(self) -> State:
        state = self.store.read()
        self.registry.set_custom_tracks(state.settings.custom_tracks)
        return state

    # ------------------------------------------------------------------ queue

    def ingest_and_queue(self) -> IngestResult:
        """Read the response source and queue a job for every new submission."""

        if self.source is None:
            return IngestResult()
        rows = self.source.read_all_rows()
        with self._state_lock:
            state = self._read()
            previous_last_row = state.last_row
            result = ingest_rows(state, rows, self.registry, clock=self._clock)
            if result.created or result.last_row != previous_last_row:
                self.store.write(state)
        return result

    def drain_queue(self) -> DrainResult:
        return self.drainer.drain()

    def poll_once(self) -> PollResult:
        """One scheduler tick: ingest, drain, remind, digest."""

        log = structlog.get_logger().bind(component="engine")
        ingest: IngestResult | None = None
        source_error: str | None = None
        try:
            ingest = self.ingest_and_queue()
        except ResponseSourceError as exc:
            source_error = str(exc)
            log.warning("response_source_failed", error=source_error)

        drain = self.drain_queue()
        now = self._clock()
        reminders = send_pending_reminders(self.store, self.platform, self.registry, now=now, state_lock=self._state_lock)
        digest_sent = send_daily_digest(self.store, self.platform, self.registry, now=now, state_lock=self._state_lock)
        return PollResult(
            ingest=ingest,
            drain=drain,
            reminders=reminders,
            digest_sent=digest_sent,
            source_error=source_error,
        )

    # ------------------------------------------------------------------ votes

    def evaluate_votes(self, message_id: str) -> VoteEvaluation:
        return self.workflow.evaluate_votes(message_id)

    def invalidate_reviewers(self, channel_id: str | None = None) -> None:
        self.reviewers.invalidate(channel_id)

    # --------------------------------------------------------------- commands

    def resolve_message_id(self, target: str) -> str | None:
        """Find an application by message id, thread id, display id or job id."""

        target = (target or "").strip()
        if not target:
            return None
        state = self._read()
        if target in state.applications:
            return target
        if target in state.threads:
            return state.threads[target]

        lowered = target.lower()
        for message_id, application in state.applications.items():
            if application_display_id(self.registry, application).lower() == lowered:
                return message_id
        job_matches = [
            message_id
            for message_id, application in state.applications.items()
            if (application.job_id or "").lower() == lowered
        ]
        return job_matches[0] if len(job_matches) == 1 else None

    def _record(self, action: str, actor_id: str | None, channel_id: str | None, detail: str) -> None:
        with self._state_lock:
            state = self._read()
            record_control_action(
                state, action, user_id=actor_id, channel_id=channel_id, detail=detail, now=self._clock()
            )
            self.store.write(state)

    def finalize(
        self,
        target: str,
        decision: str,
        actor_id: str,
        *,
        reason: str = "",
        force: bool = False,
        channel_id: str | None = None,
    ) -> TransitionResult:
        """Force a decision through an admin command."""

        message_id = self.resolve_message_id(target)
        if message_id is None:
            return TransitionResult(ok=False, reason=UNKNOWN_APPLICATION)
        result = self.workflow.finalize(
            message_id,
            decision,
            SOURCE_FORCE,
            actor_id,
            reason=reason,
            allow_missing_member=force,
        )
        action = "accept" if decision == STATUS_ACCEPTED else "deny" if decision == STATUS_DENIED else decision
        self._record(action, actor_id, channel_id, f"{message_id}: {'ok' if result.ok else result.reason}")
        return result

    def reopen(self, target: str, actor_id: str, *, reason: str = "", channel_id: str | None = None) -> TransitionResult:
        message_id = self.resolve_message_id(target)
        if message_id is None:
            return TransitionResult(ok=False, reason=UNKNOWN_APPLICATION)
        result = self.workflow.reopen(message_id, actor_id, reason)
        self._record("reopen", actor_id, channel_id, f"{message_id}: {'ok' if result.ok else result.reason}")
        return result

    def close(self, target: str, actor_id: str, *, reason: str = "", channel_id: str | None = None) -> TransitionResult:
        message_id = self.resolve_message_id(target)
        if message_id is None:
            return TransitionResult(ok=False, reason=UNKNOWN_APPLICATION)
        result = self.workflow.close(message_id, actor_id, reason)
        self._record("close", actor_id, channel_id, f"{message_id}: {'ok' if result.ok else result.reason}")
        return result

"""Single-flight worker that publishes queued jobs as application messages."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Callable, List, Mapping

import structlog

from slack_application_engine.models import ChannelNotConfiguredError
from slack_application_engine.platform import ChatPlatform, ChatPlatformError, PostedMessage, error_text

from .fingerprint import (
    build_response_key,
    format_submitted_fields,
    identity_digest,
    infer_applicant_name,
    infer_applicant_user_value,
    submitted_fields_fingerprint,
)
from .messages import APPLICATION_POST_METADATA, build_application_message, build_thread_name
from .models import STATUS_PENDING, Application, Job, State
from .queue import build_application_id, sort_jobs
from .side_effects import resolve_applicant_user
from .storage import StateStore
from .tracks import TrackRegistry, infer_application_tracks
from .votes import ACCEPT_EMOJI, DENY_EMOJI


@dataclass(frozen=True)
class DrainResult:
    queued_before: int = 0
    posted: int = 0
    failed: int = 0
    remaining: int = 0
    busy: bool = False
    failed_job_id: str | None = None
    failed_error: str | None = None


def repair_job_tracks(job: Job, registry: TrackRegistry) -> None:
    """Re-derive track keys in place so stale persisted jobs heal themselves."""

    inferred = infer_application_tracks(registry, job.headers, job.row)
    job.track_keys = registry.normalize_track_keys(job.track_keys, fallback=inferred)
    job.posted_track_keys = [
        key for key in registry.normalize_track_keys(job.posted_track_keys) if key in job.track_keys
    ]


def resolve_job_channels(state: State, job: Job, registry: TrackRegistry) -> dict[str, str]:
    """Map every still-pending track of *job* to its channel, or fail the whole job."""

    channels: dict[str, str] = {}
    missing: List[str] = []
    for track_key in job.track_keys:
        if track_key in job.posted_track_keys:
            continue
        channel_id = (state.settings.channels.get(track_key) or "").strip()
        if channel_id:
            channels[track_key] = channel_id
        else:
            missing.append(registry.label(track_key))
    if missing:
        raise ChannelNotConfiguredError(missing)
    return channels


class QueueDrainer:
    """Drain the post-job queue head first, one execution at a time.

    ``drain`` never blocks on a concurrent run: while another thread holds the
    single-flight lock it returns ``busy=True`` without touching the queue.
    A failing head job halts the queue so publish order is preserved.
    """

    def __init__(
        self,
        store: StateStore,
        platform: ChatPlatform,
        registry: TrackRegistry,
        *,
        lock: threading.Lock | None = None,
        state_lock: threading.RLock | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._platform = platform
        self._registry = registry
        self._lock = lock or threading.Lock()
        self._state_lock = state_lock or threading.RLock()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._paused_logged = False

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _read(self) -> State:
        state = self._store.read()
        self._registry.set_custom_tracks(state.settings.custom_tracks)
        return state

    def drain(self) -> DrainResult:
        if not self._lock.acquire(blocking=False):
            return DrainResult(busy=True)
        try:
            return self._drain()
        finally:
            self._lock.release()

    def _drain(self) -> DrainResult:
        log = structlog.get_logger().bind(component="queue_processor")
        state = self._read()
        queued_before = len(state.post_jobs)
        if queued_before == 0:
            return DrainResult()

        if not any((channel or "").strip() for channel in state.settings.channels.values()):
            if not self._paused_logged:
                log.warning("queue_paused_no_channels", queued=queued_before)
                self._paused_logged = True
            return DrainResult(queued_before=queued_before, remaining=queued_before)
        self._paused_logged = False

        posted = 0
        while True:
            with self._state_lock:
                state = self._read()
                sort_jobs(state.post_jobs)
                if not state.post_jobs:
                    remaining = 0
                    break
                job = state.post_jobs[0]
                repair_job_tracks(job, self._registry)
                job.attempts += 1
                job.last_attempt_at = self._clock()
                try:
                    self._publish_job(state, job)
                except Exception as exc:
                    job.last_error = str(exc) if isinstance(exc, ChannelNotConfiguredError) else error_text(exc)
                    self._record_failure(job)
                    log.error(
                        "queue_job_failed",
                        job_id=job.job_id,
                        row_index=job.row_index,
                        attempts=job.attempts,
                        error=job.last_error,
                    )
                    result = DrainResult(
                        queued_before=queued_before,
                        posted=posted,
                        failed=1,
                        remaining=len(state.post_jobs),
                        failed_job_id=job.job_id,
                        failed_error=job.last_error,
                    )
                    log.info("queue_run_summary", **asdict(result))
                    return result

                state.post_jobs.pop(0)
                self._store.write(state)
                posted += 1
                log.info(
                    "queue_job_posted",
                    job_id=job.job_id,
                    row_index=job.row_index,
                    track_keys=job.track_keys,
                )

        result = DrainResult(queued_before=queued_before, posted=posted, remaining=remaining)
        log.info("queue_run_summary", **asdict(result))
        return result

    def _record_failure(self, job: Job) -> None:
        """Persist the attempt bookkeeping of *job* onto a fresh copy of the state.

        The in-memory state may hold a half-applied publish whose write failed,
        so only the job counters are carried over.
        """

        try:
            state = self._read()
            stored = next((item for item in state.post_jobs if item.job_id == job.job_id), None)
            if stored is None:
                return
            stored.attempts = job.attempts
            stored.last_attempt_at = job.last_attempt_at
            stored.last_error = job.last_error
            self._store.write(state)
        except Exception:
            structlog.get_logger().bind(component="queue_processor").exception(
                "queue_job_failure_not_recorded", job_id=job.job_id
            )

    def _find_existing_post(
        self, channel_id: str, track_key: str, response_key: str | None, fields_fingerprint: str
    ) -> PostedMessage | None:
        """Find an application post for this submission already sitting in *channel_id*."""

        response_key = identity_digest(response_key)
        fields_fingerprint = identity_digest(fields_fingerprint)
        if not response_key and not fields_fingerprint:
            return None

        def matches(payload: Mapping[str, Any]) -> bool:
            posted_track = str(payload.get("track_key") or "")
            if posted_track and posted_track != track_key:
                return False
            if response_key and str(payload.get("response_key") or "") == response_key:
                return True
            return bool(fields_fingerprint) and str(payload.get("fields_fingerprint") or "") == fields_fingerprint

        try:
            return self._platform.find_tagged_message(channel_id, APPLICATION_POST_METADATA, matches)
        except ChatPlatformError as exc:
            structlog.get_logger().bind(component="queue_processor").warning(
                "queue_existing_post_lookup_failed", channel_id=channel_id, error=exc.message
            )
            return None

    def _publish_job(self, state: State, job: Job) -> None:
        """Publish every pending track of the head job, persisting after each one."""

        channels = resolve_job_channels(state, job, self._registry)
        applicant_name = infer_applicant_name(job.headers, job.row)
        submitted = format_submitted_fields(job.headers, job.row)
        response_key = (job.response_key or "").strip() or build_response_key(job.headers, job.row)
        fields_fingerprint = submitted_fields_fingerprint(submitted)
        resolution = resolve_applicant_user(self._platform, infer_applicant_user_value(job.headers, job.row))
        log = structlog.get_logger().bind(component="queue_processor", job_id=job.job_id)

        for track_key, channel_id in channels.items():
            track_label = self._registry.label(track_key)
            application_id = build_application_id(self._registry, track_key, job.job_id)
            posted = self._find_existing_post(channel_id, track_key, response_key, fields_fingerprint)
            if posted is not None and posted.message_id in state.applications:
                posted = None
            if posted is not None:
                log.info("queue_existing_post_reused", track_key=track_key, message_id=posted.message_id)
            else:
                message = build_application_message(
                    application_id=application_id or job.job_id,
                    track_label=track_label,
                    headers=job.headers,
                    row=job.row,
                    applicant_user_id=resolution.user_id,
                    applicant_raw_value=resolution.raw_value,
                    track_key=track_key,
                    response_key=identity_digest(response_key),
                    fields_fingerprint=identity_digest(fields_fingerprint),
                )
                posted = self._platform.send_message(channel_id, message)

            # The message exists from here on; later failures must not cause a re-post.
            for emoji in (ACCEPT_EMOJI, DENY_EMOJI):
                try:
                    self._platform.add_reaction(posted.channel_id, posted.message_id, emoji)
                except ChatPlatformError as exc:
                    log.warning("queue_reaction_failed", track_key=track_key, emoji=emoji, error=exc.message)
            thread_id = posted.thread_id
            if not thread_id:
                try:
                    thread_id = self._platform.create_thread(
                        posted.channel_id, posted.message_id, build_thread_name(track_label, applicant_name)
                    )
                except ChatPlatformError as exc:
                    log.warning("queue_thread_failed", track_key=track_key, error=exc.message)

            state.applications[posted.message_id] = Application(
                message_id=posted.message_id,
                application_id=application_id or posted.message_id,
                channel_id=posted.channel_id,
                thread_id=thread_id,
                status=STATUS_PENDING,
                track_key=track_key,
                row_index=job.row_index,
                response_key=response_key,
                job_id=job.job_id,
                applicant_name=applicant_name,
                applicant_user_id=resolution.user_id,
                created_at=self._clock(),
                submitted_fields=submitted,
                submitted_fields_fingerprint=fields_fingerprint or None,
            )
            if thread_id:
                state.threads[thread_id] = posted.message_id
            job.posted_track_keys = [key for key in job.track_keys if key in {*job.posted_track_keys, track_key}]
            self._store.write(state)

"""Tests for the single-flight queue drainer."""

import threading

import pytest
from structlog.testing import capture_logs

from slack_application_engine.applications.models import Settings, State
from slack_application_engine.applications.processor import QueueDrainer, resolve_job_channels
from slack_application_engine.applications.queue import ingest_rows
from slack_application_engine.applications.storage import MemoryStateStore
from slack_application_engine.applications.votes import ACCEPT_EMOJI, DENY_EMOJI
from slack_application_engine.models import ChannelNotConfiguredError, OptimisticLockError
from slack_application_engine.platform import ChatPlatformError

from conftest import FIXED_NOW, FakePlatform


SHEET = [
    ["Timestamp", "Name", "Slack ID", "What are you applying for?"],
    ["5/1/2024 10:00:00", "Ada", "U0AAAAAAA", "Tester"],
    ["5/1/2024 11:00:00", "Bob", "U0BBBBBBB", "Builder and CMD"],
]

ALL_CHANNELS = {"tester": "C_TESTER", "builder": "C_BUILDER", "cmd": "C_CMD"}


def _queued_store(registry, clock, channels=None):
    state = State(settings=Settings(channels=dict(ALL_CHANNELS if channels is None else channels)))
    ingest_rows(state, SHEET, registry, clock=clock)
    return MemoryStateStore(state)


def _drainer(store, platform, registry, clock, **kwargs):
    return QueueDrainer(store, platform, registry, clock=clock, **kwargs)


class ChannelFailingPlatform(FakePlatform):
    def __init__(self, failing_channel):
        super().__init__()
        self.failing_channel = failing_channel

    def send_message(self, channel_id, message):
        if channel_id == self.failing_channel:
            self.calls.append(("send_message", (channel_id, message)))
            raise ChatPlatformError("unknown", "channel_not_found")
        return super().send_message(channel_id, message)


class FailingWriteStore(MemoryStateStore):
    """Rejects the next write while ``fail_next`` is set."""

    fail_next = False

    def write(self, state):
        if self.fail_next:
            self.fail_next = False
            raise OptimisticLockError("state changed underneath")
        super().write(state)


def test_drain_publishes_every_job_in_order(registry, clock, fake_platform):
    store = _queued_store(registry, clock)

    with capture_logs() as logs:
        result = _drainer(store, fake_platform, registry, clock).drain()

    assert result.posted == 2
    assert result.remaining == 0
    assert result.queued_before == 2
    assert [channel for channel, _, _ in fake_platform.sent] == ["C_TESTER", "C_BUILDER", "C_CMD"]

    state = store.read()
    assert state.post_jobs == []
    applications = sorted(state.applications.values(), key=lambda app: app.message_id)
    assert [app.application_id for app in applications] == ["TESTER-1", "BUILDER-2", "CMD-2"]
    assert applications[0].applicant_user_id == "U0AAAAAAA"
    assert applications[0].applicant_name == "Ada"
    assert applications[0].created_at == FIXED_NOW
    assert applications[0].status == "pending"
    assert state.threads[applications[0].thread_id] == applications[0].message_id
    assert fake_platform.reactions_added[:2] == [
        (applications[0].message_id, ACCEPT_EMOJI),
        (applications[0].message_id, DENY_EMOJI),
    ]
    assert [entry["event"] for entry in logs].count("queue_job_posted") == 2


def test_drain_returns_busy_while_another_run_holds_the_lock(registry, clock, fake_platform):
    store = _queued_store(registry, clock)
    lock = threading.Lock()
    drainer = _drainer(store, fake_platform, registry, clock, lock=lock)

    lock.acquire()
    try:
        assert drainer.busy is True
        result = drainer.drain()
    finally:
        lock.release()

    assert result.busy is True
    assert fake_platform.sent == []
    assert len(store.read().post_jobs) == 2


def test_empty_queue_is_a_no_op(registry, clock, fake_platform, store):
    result = _drainer(store, fake_platform, registry, clock).drain()

    assert result.posted == 0
    assert result.queued_before == 0
    assert fake_platform.calls == []


def test_queue_pauses_without_any_channel(registry, clock, fake_platform):
    store = _queued_store(registry, clock, channels={})
    drainer = _drainer(store, fake_platform, registry, clock)

    with capture_logs() as logs:
        first = drainer.drain()
        drainer.drain()

    assert first.remaining == 2
    assert fake_platform.sent == []
    assert [entry["event"] for entry in logs] == ["queue_paused_no_channels"]


def test_missing_track_channel_fails_the_whole_job(registry, clock, fake_platform):
    store = _queued_store(registry, clock, channels={"tester": "C_TESTER", "builder": "C_BUILDER"})

    result = _drainer(store, fake_platform, registry, clock).drain()

    assert result.posted == 1
    assert result.failed_job_id == "job-000002"
    assert result.failed_error == "Missing post channels for: CMD."
    assert [channel for channel, _, _ in fake_platform.sent] == ["C_TESTER"]

    job = store.read().post_jobs[0]
    assert job.attempts == 1
    assert job.posted_track_keys == []
    assert job.last_attempt_at == FIXED_NOW


def test_resolve_job_channels_skips_posted_tracks(registry, clock):
    store = _queued_store(registry, clock, channels={"builder": "C_BUILDER"})
    state = store.read()
    job = state.post_jobs[1]
    job.posted_track_keys = ["cmd"]

    assert resolve_job_channels(state, job, registry) == {"builder": "C_BUILDER"}
    with pytest.raises(ChannelNotConfiguredError) as excinfo:
        resolve_job_channels(state, state.post_jobs[0], registry)
    assert excinfo.value.track_labels == ["Tester"]


def test_send_failure_halts_the_queue(registry, clock, fake_platform):
    store = _queued_store(registry, clock)
    fake_platform.fail("send_message")
    drainer = _drainer(store, fake_platform, registry, clock)

    with capture_logs() as logs:
        halted = drainer.drain()

    assert halted.failed_job_id == "job-000001"
    assert halted.remaining == 2
    assert fake_platform.sent == []
    assert store.read().post_jobs[0].last_error == "send_message failed"
    assert any(entry["event"] == "queue_job_failed" for entry in logs)

    resumed = drainer.drain()

    assert resumed.posted == 2
    assert store.read().applications


def test_partially_posted_job_resumes_with_remaining_tracks(registry, clock):
    store = _queued_store(registry, clock)
    platform = ChannelFailingPlatform("C_CMD")
    drainer = _drainer(store, platform, registry, clock)

    first = drainer.drain()

    assert first.posted == 1
    assert first.failed_job_id == "job-000002"
    job = store.read().post_jobs[0]
    assert job.posted_track_keys == ["builder"]
    assert {app.track_key for app in store.read().applications.values()} == {"tester", "builder"}

    platform.failing_channel = None
    second = drainer.drain()

    assert second.posted == 1
    assert [channel for channel, _, _ in platform.sent] == ["C_TESTER", "C_BUILDER", "C_CMD"]
    assert store.read().post_jobs == []


def test_reaction_and_thread_failures_do_not_halt(registry, clock, fake_platform):
    store = _queued_store(registry, clock)
    fake_platform.fail("add_reaction", times=2)
    fake_platform.fail("create_thread")

    with capture_logs() as logs:
        result = _drainer(store, fake_platform, registry, clock).drain()

    assert result.posted == 2
    tester = next(app for app in store.read().applications.values() if app.track_key == "tester")
    assert tester.thread_id is None
    events = [entry["event"] for entry in logs]
    assert events.count("queue_reaction_failed") == 2
    assert "queue_thread_failed" in events


def test_transport_error_halts_and_records_the_attempt(registry, clock, fake_platform):
    store = _queued_store(registry, clock)
    fake_platform.fail("send_message", ConnectionResetError("connection reset by peer"))
    drainer = _drainer(store, fake_platform, registry, clock)

    with capture_logs() as logs:
        halted = drainer.drain()

    assert halted.failed == 1
    assert halted.failed_job_id == "job-000001"
    assert halted.failed_error == "ConnectionResetError: connection reset by peer"
    assert drainer.busy is False
    job = store.read().post_jobs[0]
    assert job.attempts == 1
    assert job.last_attempt_at == FIXED_NOW
    assert job.last_error == "ConnectionResetError: connection reset by peer"
    assert any(entry["event"] == "queue_job_failed" for entry in logs)

    assert drainer.drain().posted == 2


def test_jobs_queued_out_of_order_publish_by_row(registry, clock, fake_platform):
    state = _queued_store(registry, clock).read()
    ada, bob = state.post_jobs
    ada.job_id, bob.job_id = "job-000002", "job-000001"
    state.post_jobs = [bob, ada]
    store = MemoryStateStore(state)

    result = _drainer(store, fake_platform, registry, clock).drain()

    assert result.posted == 2
    assert [channel for channel, _, _ in fake_platform.sent] == ["C_TESTER", "C_BUILDER", "C_CMD"]
    rows = [store.read().applications[message_id].row_index for _, _, message_id in fake_platform.sent]
    assert rows == [2, 3, 3]


def test_failed_write_after_send_reuses_the_existing_post(registry, clock, fake_platform):
    state = _queued_store(registry, clock).read()
    store = FailingWriteStore(state)
    store.fail_next = True
    drainer = _drainer(store, fake_platform, registry, clock)

    halted = drainer.drain()

    assert halted.failed_job_id == "job-000001"
    assert halted.failed_error == "OptimisticLockError: state changed underneath"
    assert len(fake_platform.sent) == 1
    assert store.read().applications == {}
    assert store.read().post_jobs[0].attempts == 1

    with capture_logs() as logs:
        resumed = drainer.drain()

    assert resumed.posted == 2
    assert [channel for channel, _, _ in fake_platform.sent] == ["C_TESTER", "C_BUILDER", "C_CMD"]
    first_ts = fake_platform.sent[0][2]
    tester = store.read().applications[first_ts]
    assert tester.application_id == "TESTER-1"
    assert tester.thread_id == first_ts
    assert [message_id for message_id, _ in fake_platform.threads].count(first_ts) == 1
    assert any(entry["event"] == "queue_existing_post_reused" for entry in logs)


def test_existing_post_lookup_failure_falls_back_to_sending(registry, clock, fake_platform):
    store = _queued_store(registry, clock)
    fake_platform.fail("find_tagged_message", ChatPlatformError("permission", "missing_scope"))

    with capture_logs() as logs:
        result = _drainer(store, fake_platform, registry, clock).drain()

    assert result.posted == 2
    assert len(fake_platform.sent) == 3
    assert any(entry["event"] == "queue_existing_post_lookup_failed" for entry in logs)


def test_application_posts_carry_submission_metadata(registry, clock, fake_platform):
    store = _queued_store(registry, clock)

    _drainer(store, fake_platform, registry, clock).drain()

    _, message, message_id = fake_platform.sent[0]
    application = store.read().applications[message_id]
    assert message.metadata_type == "application_posted"
    assert message.metadata["track_key"] == "tester"
    assert message.metadata["application_id"] == "TESTER-1"
    assert len(message.metadata["response_key"]) == 64
    assert message.metadata["response_key"] != application.response_key

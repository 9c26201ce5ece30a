"""Shared fixtures and in-memory fakes for the engine tests."""

from collections import defaultdict
from datetime import UTC, datetime
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:  # pragma: no cover - import-time guard
    sys.path.insert(0, str(ROOT))

from slack_application_engine import config  # noqa: E402
from slack_application_engine.applications.models import Application, State  # noqa: E402
from slack_application_engine.applications.storage import MemoryStateStore  # noqa: E402
from slack_application_engine.applications.tracks import TrackRegistry  # noqa: E402
from slack_application_engine.db import Base, create_schema, get_engine, reset_engine_cache  # noqa: E402
from slack_application_engine.platform import ChatPlatformError, Member, PostedMessage  # noqa: E402


FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class FakePlatform:
    """Records every call and serves canned workspace data.

    ``fail(method, error, times)`` makes the next *times* calls of *method*
    raise *error*.
    """

    def __init__(self):
        self.calls = []
        self.sent = []
        self.replies = []
        self.reactions_added = []
        self.threads = []
        self.archived = []
        self.direct_messages = []
        self.recolored = []
        self.group_adds = []
        self.members = {}
        self.channel_members = defaultdict(list)
        self.groups = defaultdict(set)
        self.reactions = defaultdict(set)
        self.lookup = {}
        self.workspace = "Test Workspace"
        self._failures = defaultdict(list)
        self._sequence = 0

    # helpers -------------------------------------------------------------

    def fail(self, method, error=None, times=1):
        error = error or ChatPlatformError("unknown", f"{method} failed")
        self._failures[method].extend([error] * times)

    def add_member(self, user_id, *, channel_id=None, is_bot=False, display_name=""):
        member = Member(user_id=user_id, display_name=display_name or user_id, is_bot=is_bot)
        self.members[user_id] = member
        if channel_id:
            self.channel_members[channel_id].append(user_id)
        return member

    def react(self, message_id, emoji, *user_ids):
        self.reactions[(message_id, emoji)].update(user_ids)

    def _enter(self, method, *args):
        self.calls.append((method, args))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _next_ts(self):
        self._sequence += 1
        return f"1714560000.{self._sequence:06d}"

    # ChatPlatform --------------------------------------------------------

    def send_message(self, channel_id, message):
        self._enter("send_message", channel_id, message)
        posted = PostedMessage(message_id=self._next_ts(), channel_id=channel_id)
        self.sent.append((channel_id, message, posted.message_id))
        return posted

    def reply_to_message(self, channel_id, message_id, text, *, broadcast=False):
        self._enter("reply_to_message", channel_id, message_id, text)
        self.replies.append((channel_id, message_id, text, broadcast))
        return PostedMessage(message_id=self._next_ts(), channel_id=channel_id)

    def add_reaction(self, channel_id, message_id, emoji):
        self._enter("add_reaction", channel_id, message_id, emoji)
        self.reactions_added.append((message_id, emoji))

    def create_thread(self, channel_id, message_id, name):
        self._enter("create_thread", channel_id, message_id, name)
        self.threads.append((message_id, name))
        return message_id

    def archive_thread(self, channel_id, thread_id, reason):
        self._enter("archive_thread", channel_id, thread_id, reason)
        self.archived.append((thread_id, reason))

    def fetch_reaction_users(self, channel_id, message_id, emoji):
        self._enter("fetch_reaction_users", channel_id, message_id, emoji)
        return set(self.reactions[(message_id, emoji)])

    def fetch_channel_members(self, channel_id):
        self._enter("fetch_channel_members", channel_id)
        return [self.members[user_id] for user_id in self.channel_members[channel_id] if user_id in self.members]

    def fetch_member(self, user_id):
        self._enter("fetch_member", user_id)
        return self.members.get(user_id)

    def find_user(self, query):
        self._enter("find_user", query)
        return self.lookup.get(query)

    def fetch_user_group_members(self, group_id):
        self._enter("fetch_user_group_members", group_id)
        return set(self.groups[group_id])

    def add_user_to_group(self, group_id, user_id):
        self._enter("add_user_to_group", group_id, user_id)
        self.groups[group_id].add(user_id)
        self.group_adds.append((group_id, user_id))

    def send_direct_message(self, user_id, text):
        self._enter("send_direct_message", user_id, text)
        self.direct_messages.append((user_id, text))
        return PostedMessage(message_id=self._next_ts(), channel_id=f"D{user_id}")

    def recolor_message(self, channel_id, message_id, color):
        self._enter("recolor_message", channel_id, message_id, color)
        self.recolored.append((message_id, color))
        return True

    def find_tagged_message(self, channel_id, metadata_type, match):
        self._enter("find_tagged_message", channel_id, metadata_type)
        threaded = {message_id for message_id, _ in self.threads}
        for sent_channel, message, message_id in reversed(self.sent):
            if sent_channel != channel_id or message.metadata_type != metadata_type:
                continue
            if match(message.metadata):
                thread_id = message_id if message_id in threaded else None
                return PostedMessage(message_id=message_id, channel_id=channel_id, thread_id=thread_id)
        return None

    def workspace_name(self):
        self._enter("workspace_name")
        return self.workspace


def make_application(message_id="1714560000.000001", **overrides):
    data = dict(
        message_id=message_id,
        application_id="TESTER-1",
        channel_id="C_TESTER",
        thread_id=message_id,
        track_key="tester",
        row_index=2,
        job_id="job-000001",
        applicant_name="Ada",
        applicant_user_id="U_APPLICANT",
        created_at=FIXED_NOW,
        submitted_fields=["**Name:** Ada", "**Slack ID:** U_APPLICANT"],
    )
    data.update(overrides)
    return Application(**data)


@pytest.fixture
def fake_platform():
    return FakePlatform()


@pytest.fixture
def registry():
    return TrackRegistry()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def store():
    return MemoryStateStore(State())


@pytest.fixture
def database(monkeypatch, tmp_path):
    db_path = tmp_path / "engine.db"
    monkeypatch.setenv("SLACK_BOT_TOKEN", "token")
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")

    config.get_settings.cache_clear()
    reset_engine_cache()

    engine = get_engine()
    create_schema(engine)

    yield engine

    Base.metadata.drop_all(engine)
    config.get_settings.cache_clear()
    reset_engine_cache()

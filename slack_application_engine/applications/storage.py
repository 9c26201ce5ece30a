"""Persistence of the engine state as a single versioned JSON document."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from slack_application_engine.db import session_scope
from slack_application_engine.models import STATE_DOCUMENT_NAME, OptimisticLockError, StateDocument

from .migrations import normalize_state
from .models import State
from .tracks import TrackRegistry


class StateStore(Protocol):
    def read(self) -> State: ...

    def write(self, state: State) -> None: ...


def serialize_state(state: State) -> str:
    return json.dumps(state.model_dump(mode="json"), sort_keys=True)


def deserialize_state(payload: str | None, registry: TrackRegistry | None = None) -> State:
    """Parse a stored payload, falling back to the default state when unreadable."""

    if not payload:
        return normalize_state(None, registry=registry)
    try:
        raw = json.loads(payload)
    except json.JSONDecodeError:
        structlog.get_logger().bind(component="state").warning("state_payload_unparseable")
        return normalize_state(None, registry=registry)
    return normalize_state(raw, registry=registry)


class SqlStateStore:
    """Store the state document in the ``state_documents`` table.

    Writes are guarded by an optimistic ``version`` column: a write whose base
    version no longer matches raises :class:`OptimisticLockError` instead of
    silently overwriting a concurrent update. The base version is tracked per
    thread, so a read in one thread never moves another thread's base.
    """

    def __init__(
        self,
        *,
        registry: TrackRegistry | None = None,
        session_factory: sessionmaker[Session] | None = None,
        name: str = STATE_DOCUMENT_NAME,
    ) -> None:
        self._registry = registry or TrackRegistry()
        self._session_factory = session_factory
        self._name = name
        self._local = threading.local()

    @property
    def _version(self) -> int | None:
        return getattr(self._local, "version", None)

    @_version.setter
    def _version(self, value: int | None) -> None:
        self._local.version = value

    def read(self) -> State:
        with session_scope(self._session_factory) as session:
            document = session.execute(
                select(StateDocument).where(StateDocument.name == self._name)
            ).scalar_one_or_none()
            if document is None:
                self._version = None
                return normalize_state(None, registry=self._registry)
            self._version = document.version
            payload = document.payload_json
        return deserialize_state(payload, self._registry)

    def write(self, state: State) -> None:
        payload = serialize_state(state)
        now = datetime.now(UTC)
        with session_scope(self._session_factory) as session:
            if self._version is None:
                existing = session.execute(
                    select(StateDocument.id).where(StateDocument.name == self._name)
                ).scalar_one_or_none()
                if existing is not None:
                    raise OptimisticLockError("State document was created concurrently.")
                session.add(
                    StateDocument(
                        name=self._name,
                        payload_json=payload,
                        schema_version=state.schema_version,
                        version=1,
                        updated_at=now,
                    )
                )
                new_version = 1
            else:
                new_version = self._version + 1
                result = session.execute(
                    update(StateDocument)
                    .where(StateDocument.name == self._name, StateDocument.version == self._version)
                    .values(
                        payload_json=payload,
                        schema_version=state.schema_version,
                        version=new_version,
                        updated_at=now,
                    )
                )
                if result.rowcount != 1:
                    raise OptimisticLockError("State document was modified concurrently.")
        self._version = new_version


class MemoryStateStore:
    """Keep the state in memory; every read and write hands out a deep copy."""

    def __init__(self, state: State | None = None) -> None:
        self._state = (state or State()).model_copy(deep=True)
        self.writes = 0

    def read(self) -> State:
        return self._state.model_copy(deep=True)

    def write(self, state: State) -> None:
        self._state = state.model_copy(deep=True)
        self.writes += 1

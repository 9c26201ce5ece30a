"""Database engine and session utilities for the state document store."""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from slack_application_engine.config import get_settings

Base = declarative_base()


def _engine_options(database_url: str) -> Dict[str, Any]:
    """SQLite connections are shared by the poller and request threads."""

    if make_url(database_url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


@lru_cache()
def get_engine() -> Engine:
    """Create or return the cached engine for ``DATABASE_URL``."""

    database_url = get_settings().database_url
    return create_engine(database_url, future=True, echo=False, **_engine_options(database_url))


@lru_cache()
def get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False, future=True, expire_on_commit=False)


def create_schema(engine: Engine | None = None) -> None:
    Base.metadata.create_all(engine or get_engine())


def reset_engine_cache() -> None:
    """Dispose the cached engine and forget the cached factories."""

    if get_engine.cache_info().currsize:
        get_engine().dispose()
    get_engine.cache_clear()
    get_session_factory.cache_clear()


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Generator[Session, None, None]:
    """Commit on success, roll back on any error, always close."""

    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_database() -> None:
    """Raise when the database cannot answer a trivial query."""

    with session_scope() as session:
        session.execute(text("SELECT 1"))

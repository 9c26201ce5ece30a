"""Slack Application Engine package initialisation."""

from .background import BackgroundPoller, run_async  # noqa: F401
from .config import AppSettings, get_settings  # noqa: F401
from .db import Base, check_database, create_schema, get_engine, get_session_factory, session_scope  # noqa: F401
from .logging_config import configure_logging  # noqa: F401
from .models import StateDocument  # noqa: F401

__all__ = [
    "AppSettings",
    "get_settings",
    "run_async",
    "BackgroundPoller",
    "Base",
    "check_database",
    "create_schema",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "StateDocument",
    "configure_logging",
]

"""Drop and recreate the state document table of a local database.

Usage:
    python scripts/reset_local_db.py [--keep-settings]

Environment:
    DATABASE_URL (and the other required settings) must be exported in the
    current shell before running this script.
"""

from __future__ import annotations

import argparse

import structlog

from slack_application_engine.applications.models import State
from slack_application_engine.applications.storage import SqlStateStore
from slack_application_engine.db import Base, create_schema, get_engine
from slack_application_engine.logging_config import configure_logging


def reset_database(*, keep_settings: bool = False) -> State:
    """Recreate the schema; optionally carry the operator settings over."""

    settings = SqlStateStore().read().settings if keep_settings else None
    engine = get_engine()
    Base.metadata.drop_all(engine)
    create_schema(engine)

    state = State(settings=settings) if settings is not None else State()
    SqlStateStore().write(state)
    structlog.get_logger().info("local_database_reset", kept_settings=keep_settings)
    return state


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--keep-settings", action="store_true", help="preserve channels, roles and templates")
    args = parser.parse_args(argv)
    configure_logging()
    reset_database(keep_settings=args.keep_settings)


if __name__ == "__main__":
    main()

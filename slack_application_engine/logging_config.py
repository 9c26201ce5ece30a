"""Structlog configuration for the engine's structured event logs."""

from __future__ import annotations

import logging
import re
from typing import Any, MutableMapping

import structlog

LOG_LEVEL = "INFO"
SERVICE_NAME = "slack-application-engine"

SLACK_TOKEN_PATTERN = re.compile(r"\bxox[abposr]-[A-Za-z0-9-]+")
REDACTED_TOKEN = "xox?-[redacted]"


def add_service_name(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def redact_slack_tokens(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask Slack tokens in string values, including rendered tracebacks."""

    for key, value in event_dict.items():
        if isinstance(value, str) and "xox" in value:
            event_dict[key] = SLACK_TOKEN_PATTERN.sub(REDACTED_TOKEN, value)
    return event_dict


def configure_logging(level: str | int = LOG_LEVEL, *, renderer: str = "json") -> None:
    """Route structlog through stdlib logging, rendering JSON lines by default.

    ``renderer="console"`` switches to structlog's coloured developer output.
    """

    final = structlog.dev.ConsoleRenderer() if renderer == "console" else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_name,
            structlog.processors.format_exc_info,
            redact_slack_tokens,
            final,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig()
    logging.getLogger().setLevel(level)

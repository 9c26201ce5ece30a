"""Application intake: queue, processor, vote tally and decision workflow."""

from .models import Application, Job, Settings, State  # noqa: F401
from .storage import MemoryStateStore, SqlStateStore, StateStore  # noqa: F401
from .tracks import TrackRegistry  # noqa: F401

__all__ = [
    "Application",
    "Job",
    "Settings",
    "State",
    "StateStore",
    "SqlStateStore",
    "MemoryStateStore",
    "TrackRegistry",
]

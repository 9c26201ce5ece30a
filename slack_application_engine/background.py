"""Utilities for running background work off the request thread."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextvars import copy_context
from typing import Any, Callable
from uuid import uuid4

import structlog
from structlog.contextvars import bind_contextvars, bound_contextvars, get_contextvars


_executor = ThreadPoolExecutor(max_workers=4)


def run_async(
    func: Callable[..., Any],
    /,
    *args: Any,
    trace_id: str | None = None,
    **kwargs: Any,
) -> Future:
    """Submit *func* to the shared thread pool, carrying the caller's log context."""

    context = copy_context()

    if trace_id is not None and context.run(lambda: get_contextvars().get("trace_id")) != trace_id:
        context.run(lambda: bind_contextvars(trace_id=trace_id))

    def runner() -> Any:
        return context.run(func, *args, **kwargs)

    return _executor.submit(runner)


class BackgroundPoller:
    """Call *task* every *interval_seconds* on a daemon thread until stopped.

    A failing tick is logged and the loop keeps going.
    """

    def __init__(self, task: Callable[[], Any], *, interval_seconds: float, name: str = "application-poller") -> None:
        if interval_seconds <= 0:
            raise ValueError("Poll interval must be greater than zero")
        self._task = task
        self._interval = interval_seconds
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> Any:
        with bound_contextvars(trace_id=str(uuid4())):
            try:
                return self._task()
            except Exception:
                structlog.get_logger().bind(poller=self._name).exception("poll_tick_failed")
                return None

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
        self._thread.start()
        structlog.get_logger().bind(poller=self._name).info("poller_started", interval_seconds=self._interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

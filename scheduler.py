# ======================================================================
#  File......: scheduler.py
#  Purpose...: Recurring-task scheduler (cancellable handles, daemon threads).
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Handle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """schedule(interval, task) -> cancellable handle. Tests inject a virtual clock."""

    def schedule(
        self,
        interval: float,
        task: Callable[[], None],
        delay: Optional[float] = None,
    ) -> Handle: ...


class ThreadHandle:
    """One daemon thread that runs task every `interval` seconds until cancelled."""

    def __init__(self, interval: float, task: Callable[[], None], delay: float, name: str):
        self.interval = interval
        self.task = task
        self.delay = delay
        self._stop = threading.Event()
        self.thread = threading.Thread(target=self._run_loop, name=name, daemon=True)

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def cancel(self) -> None:
        self._stop.set()

    def _run_loop(self) -> None:
        wait = self.delay
        while not self._stop.wait(wait):
            try:
                self.task()
            except Exception:
                # keep ticking: one failed run must not kill the timer
                logger.exception("Scheduled task %s failed", self.thread.name)
            wait = self.interval


class ThreadScheduler:
    """Real wall-clock scheduler used by the app."""

    def __init__(self, name: str = "jobmon"):
        self.name = name
        self._count = 0

    def schedule(
        self,
        interval: float,
        task: Callable[[], None],
        delay: Optional[float] = None,
    ) -> ThreadHandle:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval!r}")
        self._count += 1
        handle = ThreadHandle(
            interval=float(interval),
            task=task,
            delay=float(interval if delay is None else delay),
            name=f"{self.name}-timer-{self._count}",
        )
        handle.thread.start()
        return handle

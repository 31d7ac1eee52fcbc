"""Shared fixtures: virtual clock scheduler, temp database, scripted fetcher."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from database import get_engine
from failure_ledger import FailureLedger
from metric_store import MetricStore
from models import QueueSnapshot

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# VIRTUAL CLOCK
# =============================================================================

class Clock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ManualHandle:
    def __init__(self, interval: float, task: Callable[[], None], due: datetime):
        self.interval = interval
        self.task = task
        self.due = due
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class ManualScheduler:
    """Runs scheduled tasks only when the test advances the clock."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.handles: List[ManualHandle] = []

    def schedule(self, interval: float, task: Callable[[], None], delay: Optional[float] = None):
        first = interval if delay is None else delay
        h = ManualHandle(interval, task, self.clock.now + timedelta(seconds=first))
        self.handles.append(h)
        return h

    @property
    def active_handles(self) -> List[ManualHandle]:
        return [h for h in self.handles if not h.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.clock.now + timedelta(seconds=seconds)
        while True:
            due = [h for h in self.active_handles if h.due <= target]
            if not due:
                break
            h = min(due, key=lambda x: x.due)
            self.clock.now = h.due
            h.due += timedelta(seconds=h.interval)
            h.task()
        self.clock.now = target


# =============================================================================
# FAKE FETCHER
# =============================================================================

class ScriptedFetcher:
    """Returns (or raises) the scripted results in order; repeats the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0
        self.on_fetch: Optional[Callable[[], None]] = None

    def fetch(self) -> List[QueueSnapshot]:
        self.calls += 1
        if self.on_fetch is not None:
            self.on_fetch()
        idx = min(self.calls - 1, len(self.results) - 1)
        result = self.results[idx]
        if isinstance(result, Exception):
            raise result
        return result


def snap(name: str = "thumbnailGeneration", waiting: int = 0, active: int = 0, **kw) -> QueueSnapshot:
    return QueueSnapshot(name=name, waiting_count=waiting, active_count=active, **kw)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def scheduler(clock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture
def engine(tmp_path):
    eng = get_engine(tmp_path / "metrics.db")
    yield eng
    eng.dispose()


@pytest.fixture
def metric_store(engine) -> MetricStore:
    return MetricStore(engine)


@pytest.fixture
def ledger(engine) -> FailureLedger:
    return FailureLedger(engine)

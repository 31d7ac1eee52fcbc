# ======================================================================
#  File......: rate_estimator.py
#  Purpose...: Jobs-per-minute estimate from successive queue snapshots.
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Iterable, List, Optional, Tuple

from models import QueueSnapshot, RateSample, utcnow

HISTORY_RETENTION = timedelta(hours=1)
AVERAGE_WINDOW = 10


class RateEstimator:
    """
    Derives a processing rate from queue-depth samples.

    A drop in the total waiting count is treated as completed work. When the
    queue did not shrink but workers are busy, active * (60 / dt) is used as
    a lower-bound proxy. Otherwise the system is idle and the rate is 0.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        retention: timedelta = HISTORY_RETENTION,
    ):
        self._clock = clock
        self.retention = retention
        self._history: Deque[RateSample] = deque()
        self.last_totals: Optional[Tuple[int, int]] = None
        self.last_sample_time: Optional[datetime] = None
        self.processed_since_start = 0

    def update(self, snapshots: Iterable[QueueSnapshot]) -> RateSample:
        snapshots = list(snapshots)
        now = self._clock()
        total_waiting = sum(max(s.waiting_count, 0) for s in snapshots)
        total_active = sum(max(s.active_count, 0) for s in snapshots)

        if self.last_totals is None or self.last_sample_time is None:
            self.last_totals = (total_waiting, total_active)
            self.last_sample_time = now
            return RateSample(now, 0.0)

        dt = (now - self.last_sample_time).total_seconds()
        if dt <= 0:
            # clock did not advance: nothing recorded, baseline kept
            return RateSample(now, 0.0)

        waiting_decrease = self.last_totals[0] - total_waiting
        if waiting_decrease > 0:
            self.processed_since_start += waiting_decrease
            rate = waiting_decrease / (dt / 60.0)
        elif total_active > 0:
            rate = total_active * (60.0 / dt)
        else:
            rate = 0.0

        sample = RateSample(now, float(rate))
        self._history.append(sample)
        self._evict(now)

        self.last_totals = (total_waiting, total_active)
        self.last_sample_time = now
        return sample

    def _evict(self, now: datetime) -> None:
        # inclusive window: a sample exactly at the cutoff is kept
        cutoff = now - self.retention
        while self._history and self._history[0].timestamp < cutoff:
            self._history.popleft()

    def history(self) -> List[RateSample]:
        return list(self._history)

    def average_rate(self, window: int = AVERAGE_WINDOW) -> float:
        if not self._history or window <= 0:
            return 0.0
        recent = list(self._history)[-window:]
        return sum(s.rate_per_minute for s in recent) / len(recent)

    def reset(self) -> None:
        self._history.clear()
        self.last_totals = None
        self.last_sample_time = None
        self.processed_since_start = 0

# ======================================================================
#  File......: poller.py
#  Purpose...: Polling engine (fetch -> estimate -> publish -> persist).
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from errors import FetchError, StoreError
from failure_ledger import FailureLedger
from metric_store import MetricStore
from models import (
    FailedJobRecord, MetricRecord, MetricType, MonitorStatus, QueueHealth, QueueSnapshot, ServerStats,
    utcnow,
)
from rate_estimator import RateEstimator
from scheduler import Handle, Scheduler

logger = logging.getLogger(__name__)

Subscriber = Callable[[MonitorStatus], None]

FAILED_DEGRADED_THRESHOLD = 10
BACKLOG_BUSY_THRESHOLD = 1000


def estimate_completion(
    snapshots: List[QueueSnapshot], rate_per_minute: float, now: datetime
) -> Optional[datetime]:
    """When the remaining jobs drain at the current rate, or None if they never will."""
    remaining = sum(s.total_count for s in snapshots)
    if rate_per_minute <= 0 or remaining <= 0:
        return None
    return now + timedelta(minutes=remaining / rate_per_minute)


def classify_health(snapshots: List[QueueSnapshot]) -> QueueHealth:
    if not snapshots:
        return QueueHealth.NO_DATA
    failed = sum(s.failed_count for s in snapshots)
    backlog = sum(s.total_count - s.active_count for s in snapshots)
    if failed > FAILED_DEGRADED_THRESHOLD:
        return QueueHealth.DEGRADED
    if backlog > BACKLOG_BUSY_THRESHOLD:
        return QueueHealth.BUSY
    if any(s.active_count > 0 for s in snapshots):
        return QueueHealth.PROCESSING
    return QueueHealth.HEALTHY


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


class Poller:
    """
    Drives the poll cycle on a fixed interval and republishes a consolidated
    MonitorStatus to subscribers.

    Ticks that fire while a cycle is still in flight are dropped. A fetch that
    completes after stop() is discarded (generation counter).
    """

    def __init__(
        self,
        fetcher,
        scheduler: Scheduler,
        interval_sec: float = 3.0,
        estimator: Optional[RateEstimator] = None,
        metric_store: Optional[MetricStore] = None,
        failure_ledger: Optional[FailureLedger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive, got {interval_sec!r}")
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.interval_sec = float(interval_sec)
        self.estimator = estimator or RateEstimator(clock=clock)
        self.metric_store = metric_store
        self.failure_ledger = failure_ledger
        self._clock = clock

        self._state = PollerState.IDLE
        self._handle: Optional[Handle] = None
        self._generation = 0
        self._lock = threading.RLock()
        self._cycle_lock = threading.Lock()

        self._subscribers: List[Subscriber] = []
        self._sub_lock = threading.Lock()
        self._status = MonitorStatus()
        self._last_failed: Optional[Dict[str, int]] = None

        self.cycle_count = 0
        self.skipped_ticks = 0
        self.last_latency_ms: Optional[float] = None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def is_polling(self) -> bool:
        return self._state is PollerState.POLLING

    @property
    def status(self) -> MonitorStatus:
        """Last published status (read-only snapshot)."""
        return self._status

    def start(self) -> None:
        """Idle -> Polling. Cycle 0 fires immediately. Restarts if already polling."""
        with self._lock:
            self._cancel_timer()
            self._handle = self.scheduler.schedule(self.interval_sec, self._tick, delay=0.0)
            self._state = PollerState.POLLING
        logger.info("Polling started (interval=%.1fs)", self.interval_sec)

    def stop(self) -> None:
        """Polling -> Idle. Second call is a no-op."""
        with self._lock:
            if self._state is PollerState.IDLE:
                return
            self._cancel_timer()
            self._state = PollerState.IDLE
        logger.info("Polling stopped")

    def reconfigure(self, interval_sec: Optional[float] = None, fetcher=None) -> None:
        """stop() then start() with the new interval and/or fetcher."""
        if interval_sec is not None and interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive, got {interval_sec!r}")
        with self._lock:
            self.stop()
            if fetcher is not None:
                self.fetcher = fetcher
            if interval_sec is not None:
                self.interval_sec = float(interval_sec)
            self.start()

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._generation += 1

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._sub_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._sub_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, status: MonitorStatus) -> None:
        self._status = status
        with self._sub_lock:
            subscribers = list(self._subscribers)
        for cb in subscribers:
            try:
                cb(status)
            except Exception:
                logger.exception("Status subscriber %r failed", cb)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _tick(self) -> None:
        self.run_cycle()

    def refresh(self) -> Optional[MonitorStatus]:
        """Manual refresh, allowed in either state."""
        return self.run_cycle()

    def run_cycle(self) -> Optional[MonitorStatus]:
        """
        One poll cycle. Returns the published status, or None when the cycle
        was skipped (another in flight) or its result was discarded after stop().
        """
        if not self._cycle_lock.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.debug("Poll cycle still in flight; tick skipped")
            return None
        try:
            return self._run_cycle(self._generation)
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, generation: int) -> Optional[MonitorStatus]:
        started = time.monotonic()
        try:
            snapshots = self.fetcher.fetch()
        except FetchError as e:
            if generation != self._generation:
                return None
            logger.warning("Poll failed (%s): %s", e.kind, e)
            return self._publish_disconnected(str(e))
        except Exception as e:
            if generation != self._generation:
                return None
            logger.exception("Unexpected error while fetching queues")
            return self._publish_disconnected(f"Unexpected error: {e}")

        latency_ms = (time.monotonic() - started) * 1000.0
        if generation != self._generation:
            logger.info("Discarding poll result that arrived after stop()")
            return None

        try:
            now = self._clock()
            self.estimator.update(snapshots)
            stats = self.build_stats(snapshots, now)
            status = MonitorStatus(
                connected=True,
                error_message=None,
                stats=stats,
                queues=list(snapshots),
                last_updated=now,
                rate_history=self.estimator.history(),
            )
        except Exception as e:
            logger.exception("Failed to assemble poll status")
            return self._publish_disconnected(f"Unexpected error: {e}")

        self.cycle_count += 1
        self.last_latency_ms = latency_ms
        self._publish(status)

        self._persist_metrics(stats, snapshots, latency_ms, now)
        self._observe_failures(snapshots, now)
        return status

    def _publish_disconnected(self, message: str) -> MonitorStatus:
        prev = self._status
        status = MonitorStatus(
            connected=False,
            error_message=message,
            stats=prev.stats,
            queues=prev.queues,
            last_updated=prev.last_updated,
            rate_history=prev.rate_history,
        )
        self._publish(status)
        return status

    def build_stats(self, snapshots: List[QueueSnapshot], now: datetime) -> ServerStats:
        rate = self.estimator.average_rate()
        return ServerStats(
            active_workers=sum(s.active_count for s in snapshots),
            jobs_failed_today=sum(s.failed_count for s in snapshots),
            jobs_processed_since_start=self.estimator.processed_since_start,
            average_processing_rate=rate,
            timestamp=now,
            estimated_completion=estimate_completion(snapshots, rate, now),
            health=classify_health(snapshots),
        )

    # ------------------------------------------------------------------
    # Best-effort side effects
    # ------------------------------------------------------------------

    def _persist_metrics(
        self,
        stats: ServerStats,
        snapshots: List[QueueSnapshot],
        latency_ms: float,
        now: datetime,
    ) -> None:
        if self.metric_store is None:
            return
        records = [
            MetricRecord(MetricType.ACTIVE_WORKERS, stats.active_workers, timestamp=now),
            MetricRecord(MetricType.COMPLETION_RATE, stats.average_processing_rate, timestamp=now),
            MetricRecord(MetricType.ERROR_RATE, stats.jobs_failed_today, timestamp=now),
            MetricRecord(MetricType.API_LATENCY, round(latency_ms, 3), timestamp=now),
        ]
        for s in snapshots:
            records.append(
                MetricRecord(MetricType.QUEUE_DEPTH, s.waiting_count, timestamp=now, queue_name=s.name)
            )
        try:
            self.metric_store.append_many(records)
        except StoreError as e:
            logger.warning("Metric write skipped for this cycle: %s", e)
        except Exception:
            logger.exception("Unexpected error writing metrics")

    def _observe_failures(self, snapshots: List[QueueSnapshot], now: datetime) -> None:
        """Record a ledger entry whenever a queue's failed count goes up."""
        if self.failure_ledger is None:
            return
        current = {s.name: s.failed_count for s in snapshots}
        previous = self._last_failed
        self._last_failed = current
        if previous is None:
            return

        for s in snapshots:
            before = previous.get(s.name)
            if before is None or s.failed_count <= before:
                continue
            delta = s.failed_count - before
            entry = FailedJobRecord(
                job_id=f"{s.name}-failed",
                queue_name=s.name,
                error_message=f"{delta} job(s) failed in {s.name}",
                failed_at=now,
                metadata_json=json.dumps({"failed_count": s.failed_count, "delta": delta}),
            )
            try:
                self.failure_ledger.record(entry)
            except StoreError as e:
                logger.warning("Could not record failure for %s: %s", s.name, e)
            except Exception:
                logger.exception("Unexpected error recording failure for %s", s.name)

# ======================================================================
#  File......: models.py
#  Purpose...: Dataclasses / enums for queue snapshots, metrics and failures.
#  Version...: 0.2.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class QueueSnapshot:
    name: str
    waiting_count: int = 0
    active_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    paused_count: int = 0
    delayed_count: int = 0
    is_paused: bool = False
    is_active: bool = False

    @property
    def total_count(self) -> int:
        """Jobs still owned by the queue (not completed, not failed)."""
        return self.active_count + self.waiting_count + self.delayed_count + self.paused_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "waiting": self.waiting_count,
            "active": self.active_count,
            "completed": self.completed_count,
            "failed": self.failed_count,
            "paused": self.paused_count,
            "delayed": self.delayed_count,
            "is_paused": self.is_paused,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class RateSample:
    timestamp: datetime
    rate_per_minute: float


class QueueHealth(str, Enum):
    NO_DATA = "no_data"
    DEGRADED = "degraded"
    BUSY = "busy"
    PROCESSING = "processing"
    HEALTHY = "healthy"


class MetricType(str, Enum):
    QUEUE_DEPTH = "queue_depth"
    COMPLETION_RATE = "completion_rate"
    ERROR_RATE = "error_rate"
    PROCESSING_TIME = "processing_time"
    CPU_USAGE = "cpu_usage"
    MEMORY_USAGE = "memory_usage"
    ACTIVE_WORKERS = "active_workers"
    API_LATENCY = "api_latency"
    STORAGE_IO = "storage_io"


@dataclass(frozen=True)
class MetricRecord:
    metric_type: MetricType
    value: float
    timestamp: datetime = field(default_factory=utcnow)
    queue_name: Optional[str] = None
    metadata: Optional[str] = None
    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class FailedJobRecord:
    job_id: str
    queue_name: str
    error_message: str
    failed_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0

    asset_id: Optional[str] = None
    asset_name: Optional[str] = None
    stack_trace: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    metadata_json: Optional[str] = None
    thumbnail_path: Optional[str] = None

    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class ServerStats:
    active_workers: int
    # Sum of the failed counts currently reported by the server, not a
    # since-midnight count.
    jobs_failed_today: int
    jobs_processed_since_start: int
    average_processing_rate: float
    timestamp: datetime = field(default_factory=utcnow)
    # None when the rate is zero or nothing is left to process
    estimated_completion: Optional[datetime] = None
    health: QueueHealth = QueueHealth.NO_DATA


@dataclass(frozen=True)
class MonitorStatus:
    connected: bool = False
    error_message: Optional[str] = None
    stats: Optional[ServerStats] = None
    queues: List[QueueSnapshot] = field(default_factory=list)
    last_updated: Optional[datetime] = None
    rate_history: List[RateSample] = field(default_factory=list)

    @property
    def total_waiting(self) -> int:
        return sum(max(q.waiting_count, 0) for q in self.queues)

    def to_dict(self) -> Dict[str, Any]:
        stats = None
        if self.stats is not None:
            stats = {
                "active_workers": self.stats.active_workers,
                "jobs_failed_today": self.stats.jobs_failed_today,
                "jobs_processed_since_start": self.stats.jobs_processed_since_start,
                "average_processing_rate": self.stats.average_processing_rate,
                "timestamp": self.stats.timestamp.isoformat(),
                "estimated_completion": (
                    self.stats.estimated_completion.isoformat()
                    if self.stats.estimated_completion else None
                ),
                "health": self.stats.health.value,
            }
        return {
            "connected": self.connected,
            "error_message": self.error_message,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "stats": stats,
            "queues": [q.to_dict() for q in self.queues],
            "rate_history": [
                {"timestamp": s.timestamp.isoformat(), "rate_per_minute": s.rate_per_minute}
                for s in self.rate_history
            ],
        }

# ======================================================================
#  File......: immich_api.py
#  Purpose...: Queue snapshot fetcher (GET /api/jobs -> QueueSnapshot list)
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

from errors import DecodeError
from immich_client import ImmichClient
from models import QueueSnapshot

logger = logging.getLogger(__name__)

COUNT_KEYS = ("active", "completed", "failed", "delayed", "waiting", "paused")


def _count(counts: Mapping[str, Any], key: str, queue_name: str) -> int:
    raw = counts.get(key, 0)
    if raw is None:
        return 0
    # bool is an int subclass; a flag in a count slot is a shape error
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise DecodeError(f"Queue '{queue_name}': count '{key}' is not an integer ({raw!r})")
    return raw


def parse_queue_entry(name: str, entry: Any) -> Optional[QueueSnapshot]:
    """
    Normalize one queue entry. Returns None for entries that are not queues.

    Accepts the Immich shape  {queueStatus: {isPaused, isActive}, jobCounts: {...}}
    and the flat shape        {isPaused, isActive, counts: {...}}.
    """
    if not isinstance(entry, Mapping):
        return None

    counts = entry.get("jobCounts", entry.get("counts"))
    if counts is None:
        return None
    if not isinstance(counts, Mapping):
        raise DecodeError(f"Queue '{name}': counts is not an object")

    status = entry.get("queueStatus")
    if status is None:
        status = entry
    elif not isinstance(status, Mapping):
        raise DecodeError(f"Queue '{name}': queueStatus is not an object")

    return QueueSnapshot(
        name=name,
        waiting_count=_count(counts, "waiting", name),
        active_count=_count(counts, "active", name),
        completed_count=_count(counts, "completed", name),
        failed_count=_count(counts, "failed", name),
        paused_count=_count(counts, "paused", name),
        delayed_count=_count(counts, "delayed", name),
        is_paused=bool(status.get("isPaused", False)),
        is_active=bool(status.get("isActive", False)),
    )


def parse_jobs_response(payload: Any) -> List[QueueSnapshot]:
    """Mapping of queue name -> entry into a name-sorted snapshot list."""
    if not isinstance(payload, Mapping):
        raise DecodeError(f"Expected an object keyed by queue name, got {type(payload).__name__}")

    out: List[QueueSnapshot] = []
    skipped: List[str] = []
    for name in sorted(payload):
        snap = parse_queue_entry(str(name), payload[name])
        if snap is None:
            skipped.append(str(name))
            continue
        out.append(snap)

    if skipped:
        logger.debug("Ignored non-queue keys in /api/jobs: %s", ", ".join(skipped))
    return out


class SnapshotFetcher:
    """One network call per poll cycle, returns normalized snapshots."""

    def __init__(self, client: ImmichClient):
        self.client = client

    def fetch(self) -> List[QueueSnapshot]:
        return parse_jobs_response(self.client.get_jobs())

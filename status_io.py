# ======================================================================
#  File......: status_io.py
#  Purpose...: JSON read/write helpers (atomic status writes for readers
#              outside the process) + status-file subscriber.
#  Version...: 0.2.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict

from models import MonitorStatus, QueueHealth

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, payload: Dict[str, Any]) -> None:
    """Write JSON atomically to avoid partial reads by other tools."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    tmp.replace(path)


def read_json(path: Path, default: Any) -> Any:
    """Read JSON safely. Returns default on missing file or parse error."""
    try:
        if not path.exists():
            return default
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.warning("Could not read %s; using default", path)
        return default


class StatusFileWriter:
    """Poller subscriber: mirrors every published status into a JSON file."""

    def __init__(self, path: Path, poll_interval_sec: Callable[[], float]):
        self.path = Path(path)
        # read on every write so a reconfigured interval shows up
        self.poll_interval_sec = poll_interval_sec

    def __call__(self, status: MonitorStatus) -> None:
        payload = {
            "meta": {
                "poll_interval_sec": self.poll_interval_sec(),
                "queue_count": len(status.queues),
                "total_waiting": status.total_waiting,
            },
            "status": status.to_dict(),
        }
        try:
            atomic_write_json(self.path, payload)
        except OSError as e:
            logger.warning("Could not write status file %s: %s", self.path, e)


def describe_status(status: MonitorStatus) -> str:
    """One-line summary for the tray tooltip."""
    if not status.connected:
        if status.error_message:
            return f"Disconnected: {status.error_message}"[:120]
        return "Not connected"
    stats = status.stats
    rate = stats.average_processing_rate if stats else 0.0
    active = stats.active_workers if stats else 0
    text = f"{status.total_waiting} waiting | {active} active | {rate:.1f} jobs/min"
    if stats is not None and stats.health is not QueueHealth.NO_DATA:
        text = f"{stats.health.value.capitalize()}: {text}"
    if stats is not None and stats.estimated_completion is not None:
        text += f" | done ~{stats.estimated_completion:%H:%M} UTC"
    return text


def load_status(path: Path) -> Dict[str, Any]:
    return read_json(Path(path), default={"meta": {}, "status": {}})

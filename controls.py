# ======================================================================
#  File......: controls.py
#  Purpose...: Queue / job control actions (pause, resume, retry, cancel).
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import logging
from typing import List, Optional

from errors import MonitorError, StoreError
from failure_ledger import FailureLedger
from immich_client import ImmichClient, validate_name

logger = logging.getLogger(__name__)


class QueueControls:
    """
    User-initiated actions. Unlike poll-cycle fetches, errors here are raised
    to the caller so the menu action can show them.
    """

    def __init__(self, client: ImmichClient, poller=None, ledger: Optional[FailureLedger] = None):
        self.client = client
        self.poller = poller
        self.ledger = ledger

    def _refresh(self) -> None:
        # queue state changed server-side; the next snapshot is stale otherwise
        if self.poller is not None:
            self.poller.refresh()

    def pause_queue(self, queue_name: str) -> None:
        self.client.pause_queue(queue_name)
        logger.info("Paused queue %s", queue_name)
        self._refresh()

    def resume_queue(self, queue_name: str) -> None:
        self.client.resume_queue(queue_name)
        logger.info("Resumed queue %s", queue_name)
        self._refresh()

    def retry_job(self, job_id: str) -> None:
        job_id = validate_name(job_id, "job id")
        self.client.retry_job(job_id)
        logger.info("Retry requested for job %s", job_id)
        if self.ledger is not None:
            try:
                self.ledger.increment_retry_count(job_id)
            except StoreError as e:
                logger.warning("Retry sent but retry count not saved for %s: %s", job_id, e)

    def cancel_job(self, job_id: str) -> None:
        self.client.cancel_job(job_id)
        logger.info("Cancelled job %s", job_id)

    def retry_failed(self, queue_name: Optional[str] = None) -> None:
        self.client.retry_failed(queue_name)
        logger.info("Retry-failed requested for %s", queue_name or "all queues")
        self._refresh()

    def clear_completed(self) -> None:
        self.client.clear_completed()
        logger.info("Cleared completed jobs")
        self._refresh()

    # --- bulk

    def _known_queues(self):
        if self.poller is None:
            return []
        return list(self.poller.status.queues)

    def pause_all(self) -> List[str]:
        """Pause every running queue. Returns names that could not be paused."""
        return self._bulk(
            [q.name for q in self._known_queues() if not q.is_paused],
            self.client.pause_queue,
            "pause",
        )

    def resume_all(self) -> List[str]:
        """Resume every paused queue. Returns names that could not be resumed."""
        return self._bulk(
            [q.name for q in self._known_queues() if q.is_paused],
            self.client.resume_queue,
            "resume",
        )

    def _bulk(self, names: List[str], action, verb: str) -> List[str]:
        failed: List[str] = []
        for name in names:
            try:
                action(name)
            except MonitorError as e:
                logger.warning("Failed to %s queue %s: %s", verb, name, e)
                failed.append(name)
        self._refresh()
        return failed

# ======================================================================
#  File......: failure_ledger.py
#  Purpose...: Durable ledger of observed job failures (SQLite).
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import from_us, to_us
from errors import StoreError
from models import FailedJobRecord

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, job_id, queue_name, asset_id, asset_name, error_message, stack_trace, "
    "failed_at_us, retry_count, file_type, file_size, metadata_json, thumbnail_path"
)


def _from_row(r) -> FailedJobRecord:
    return FailedJobRecord(
        id=r["id"],
        job_id=r["job_id"],
        queue_name=r["queue_name"],
        asset_id=r["asset_id"],
        asset_name=r["asset_name"],
        error_message=r["error_message"],
        stack_trace=r["stack_trace"],
        failed_at=from_us(r["failed_at_us"]),
        retry_count=r["retry_count"],
        file_type=r["file_type"],
        file_size=r["file_size"],
        metadata_json=r["metadata_json"],
        thumbnail_path=r["thumbnail_path"],
    )


class FailureLedger:
    """Sole reader/writer of the failed_job_records table."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._write_lock = threading.Lock()

    def record(self, entry: FailedJobRecord) -> None:
        params = {
            "id": entry.id,
            "job_id": entry.job_id,
            "queue_name": entry.queue_name,
            "asset_id": entry.asset_id,
            "asset_name": entry.asset_name,
            "error_message": entry.error_message,
            "stack_trace": entry.stack_trace,
            "failed_at_us": to_us(entry.failed_at),
            "retry_count": entry.retry_count,
            "file_type": entry.file_type,
            "file_size": entry.file_size,
            "metadata_json": entry.metadata_json,
            "thumbnail_path": entry.thumbnail_path,
        }
        with self._write_lock:
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        text(
                            f"INSERT INTO failed_job_records ({_COLUMNS}) VALUES ("
                            ":id, :job_id, :queue_name, :asset_id, :asset_name, :error_message, "
                            ":stack_trace, :failed_at_us, :retry_count, :file_type, :file_size, "
                            ":metadata_json, :thumbnail_path)"
                        ),
                        params,
                    )
            except IntegrityError as e:
                raise StoreError(f"Duplicate failed-job record id {entry.id}") from e
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to record failed job: {e}") from e

    def list(
        self,
        queue_name: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[FailedJobRecord]:
        """Most recent failures first."""
        where = []
        params: dict = {"limit": int(limit)}
        if queue_name is not None:
            where.append("queue_name = :queue_name")
            params["queue_name"] = queue_name
        if since is not None:
            where.append("failed_at_us >= :since")
            params["since"] = to_us(since)

        sql = f"SELECT {_COLUMNS} FROM failed_job_records"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY failed_at_us DESC, id LIMIT :limit"

        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text(sql), params).mappings().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch failed jobs: {e}") from e
        return [_from_row(r) for r in rows]

    def get(self, record_id: str) -> Optional[FailedJobRecord]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text(f"SELECT {_COLUMNS} FROM failed_job_records WHERE id = :id"),
                    {"id": record_id},
                ).mappings().first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch failed job {record_id}: {e}") from e
        return _from_row(row) if row else None

    def increment_retry_count(self, job_id: str) -> int:
        """+1 on every record for job_id. Returns rows touched (0 = unknown job)."""
        with self._write_lock:
            try:
                with self.engine.begin() as conn:
                    res = conn.execute(
                        text(
                            "UPDATE failed_job_records SET retry_count = retry_count + 1 "
                            "WHERE job_id = :job_id"
                        ),
                        {"job_id": job_id},
                    )
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to update retry count for {job_id}: {e}") from e

        updated = res.rowcount or 0
        if not updated:
            logger.warning("Retry count not updated: no failed-job record for job %s", job_id)
        return updated

    def delete(self, record_id: str) -> bool:
        with self._write_lock:
            try:
                with self.engine.begin() as conn:
                    res = conn.execute(
                        text("DELETE FROM failed_job_records WHERE id = :id"),
                        {"id": record_id},
                    )
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to delete failed job {record_id}: {e}") from e
        return bool(res.rowcount)

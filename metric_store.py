# ======================================================================
#  File......: metric_store.py
#  Purpose...: Append-only metric time series (SQLite) with retention,
#              bucketed aggregation and CSV export.
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

import pandas as pd
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import database_file, from_us, to_us
from errors import StoreError
from models import MetricRecord, MetricType, utcnow

logger = logging.getLogger(__name__)

BucketWidth = Union[timedelta, float, int]

_INSERT = text(
    """
    INSERT INTO historical_metrics (id, ts_us, queue_name, metric_type, value, metadata)
    VALUES (:id, :ts_us, :queue_name, :metric_type, :value, :metadata)
    """
)


def _row_params(record: MetricRecord) -> dict:
    return {
        "id": record.id,
        "ts_us": to_us(record.timestamp),
        "queue_name": record.queue_name,
        "metric_type": MetricType(record.metric_type).value,
        "value": float(record.value),
        "metadata": record.metadata,
    }


def _filters(
    metric_type: Union[MetricType, str],
    queue_name: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
) -> Tuple[str, dict]:
    where = ["metric_type = :metric_type"]
    params: dict = {"metric_type": MetricType(metric_type).value}
    if queue_name is not None:
        where.append("queue_name = :queue_name")
        params["queue_name"] = queue_name
    if since is not None:
        where.append("ts_us >= :since")
        params["since"] = to_us(since)
    if until is not None:
        where.append("ts_us <= :until")
        params["until"] = to_us(until)
    return " AND ".join(where), params


class MetricStore:
    """Sole reader/writer of the historical_metrics table."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._write_lock = threading.Lock()

    # --- writes

    def append(self, record: MetricRecord) -> None:
        self.append_many([record])

    def append_many(self, records: Iterable[MetricRecord]) -> int:
        """Insert records in one transaction; all or nothing."""
        params = [_row_params(r) for r in records]
        if not params:
            return 0
        with self._write_lock:
            try:
                with self.engine.begin() as conn:
                    conn.execute(_INSERT, params)
            except IntegrityError as e:
                raise StoreError(f"Duplicate metric id: {e.orig}") from e
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to record metrics: {e}") from e
        return len(params)

    def delete_older_than(self, cutoff: datetime) -> int:
        """Retention sweep. Rows with timestamp < cutoff are removed."""
        with self._write_lock:
            try:
                with self.engine.begin() as conn:
                    res = conn.execute(
                        text("DELETE FROM historical_metrics WHERE ts_us < :cutoff"),
                        {"cutoff": to_us(cutoff)},
                    )
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to delete old metrics: {e}") from e
        deleted = res.rowcount or 0
        logger.info("Deleted %d metric rows older than %s", deleted, cutoff.isoformat())
        return deleted

    def compact(self) -> None:
        """VACUUM the database file. Physical only, no logical effect."""
        with self._write_lock:
            try:
                with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
                    conn.execute(text("VACUUM"))
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to vacuum database: {e}") from e

    # --- reads

    def query(
        self,
        metric_type: Union[MetricType, str],
        queue_name: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[MetricRecord]:
        """Records matching the filters, newest first. Bounds are inclusive."""
        where, params = _filters(metric_type, queue_name, since, until)
        sql = text(
            "SELECT id, ts_us, queue_name, metric_type, value, metadata "
            f"FROM historical_metrics WHERE {where} ORDER BY ts_us DESC, id"
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(sql, params).mappings().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch metrics: {e}") from e

        return [
            MetricRecord(
                id=r["id"],
                timestamp=from_us(r["ts_us"]),
                queue_name=r["queue_name"],
                metric_type=MetricType(r["metric_type"]),
                value=r["value"],
                metadata=r["metadata"],
            )
            for r in rows
        ]

    def aggregate(
        self,
        metric_type: Union[MetricType, str],
        since: datetime,
        bucket_width: BucketWidth = timedelta(hours=1),
        queue_name: Optional[str] = None,
    ) -> List[Tuple[datetime, float]]:
        """
        Mean value per time bucket, oldest bucket first.

        Bucket start = floor(timestamp / width) * width (epoch aligned).
        Buckets with no rows are omitted, not zero-filled.
        """
        width_us = _width_us(bucket_width)
        where, params = _filters(metric_type, queue_name, since, None)
        sql = text(f"SELECT ts_us, value FROM historical_metrics WHERE {where}")
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(sql, params).all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to aggregate metrics: {e}") from e

        if not rows:
            return []

        df = pd.DataFrame(rows, columns=["ts_us", "value"])
        df["bucket"] = (df["ts_us"] // width_us) * width_us
        means = df.groupby("bucket", sort=True)["value"].mean()
        return [(from_us(int(b)), float(v)) for b, v in means.items()]

    def count(self, metric_type: Optional[Union[MetricType, str]] = None) -> int:
        sql = "SELECT COUNT(*) FROM historical_metrics"
        params = {}
        if metric_type is not None:
            sql += " WHERE metric_type = :metric_type"
            params["metric_type"] = MetricType(metric_type).value
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(text(sql), params).scalar_one())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count metrics: {e}") from e

    def size_on_disk(self) -> int:
        """Bytes used by the database file (plus WAL/SHM side files)."""
        path = database_file(self.engine)
        if path is None:
            return 0
        total = 0
        for p in (path, Path(f"{path}-wal"), Path(f"{path}-shm")):
            if p.exists():
                total += p.stat().st_size
        return total

    def export_csv(self, path: Path, metric_type: Optional[Union[MetricType, str]] = None) -> int:
        """Dump metric rows to CSV (oldest first). Returns the row count."""
        sql = "SELECT id, ts_us, queue_name, metric_type, value, metadata FROM historical_metrics"
        params = {}
        if metric_type is not None:
            sql += " WHERE metric_type = :metric_type"
            params["metric_type"] = MetricType(metric_type).value
        sql += " ORDER BY ts_us"
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text(sql), params).all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to export metrics: {e}") from e

        df = pd.DataFrame(rows, columns=["id", "ts_us", "queue_name", "metric_type", "value", "metadata"])
        df.insert(1, "timestamp", [from_us(int(v)).isoformat() for v in df["ts_us"]])
        df = df.drop(columns=["ts_us"])

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, index=False)
        return len(df)


def _width_us(bucket_width: BucketWidth) -> int:
    if isinstance(bucket_width, timedelta):
        seconds = bucket_width.total_seconds()
    else:
        seconds = float(bucket_width)
    width_us = int(round(seconds * 1_000_000))
    if width_us <= 0:
        raise ValueError(f"bucket_width must be positive, got {bucket_width!r}")
    return width_us


def sweep_retention(store: MetricStore, retention_days: int, now: Optional[datetime] = None) -> int:
    """Maintenance job: drop metrics older than the retention window."""
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    return store.delete_older_than(cutoff)

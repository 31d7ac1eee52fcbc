# ======================================================================
#  File......: database.py
#  Purpose...: SQLAlchemy engine + schema for the local metrics database.
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS historical_metrics (
        id          TEXT PRIMARY KEY,
        ts_us       INTEGER NOT NULL,
        queue_name  TEXT,
        metric_type TEXT NOT NULL,
        value       REAL NOT NULL,
        metadata    TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_historical_metrics_ts ON historical_metrics (ts_us)",
    "CREATE INDEX IF NOT EXISTS ix_historical_metrics_type ON historical_metrics (metric_type)",
    """
    CREATE TABLE IF NOT EXISTS failed_job_records (
        id             TEXT PRIMARY KEY,
        job_id         TEXT NOT NULL,
        queue_name     TEXT NOT NULL,
        asset_id       TEXT,
        asset_name     TEXT,
        error_message  TEXT NOT NULL,
        stack_trace    TEXT,
        failed_at_us   INTEGER NOT NULL,
        retry_count    INTEGER NOT NULL DEFAULT 0,
        file_type      TEXT,
        file_size      INTEGER,
        metadata_json  TEXT,
        thumbnail_path TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_failed_job_records_failed_at ON failed_job_records (failed_at_us)",
    "CREATE INDEX IF NOT EXISTS ix_failed_job_records_queue ON failed_job_records (queue_name)",
    "CREATE INDEX IF NOT EXISTS ix_failed_job_records_job ON failed_job_records (job_id)",
)


def to_us(dt: datetime) -> int:
    """Aware datetime -> integer microseconds since the epoch. Rows read back are UTC."""
    if dt.tzinfo is None:
        raise ValueError(f"Timestamp must be timezone-aware, got naive {dt.isoformat()}")
    delta = dt - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_us(value: int) -> datetime:
    return datetime.fromtimestamp(value // 1_000_000, tz=timezone.utc).replace(
        microsecond=value % 1_000_000
    )


def get_engine(db_path: Path, echo: bool = False) -> Engine:
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info("[DB] Opening SQLite database %s", db_path)
    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=echo,
        future=True,
        connect_args={"check_same_thread": False, "timeout": 15},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):  # pragma: no cover - driver hook
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.close()

    init_schema(engine)
    return engine


def init_schema(engine: Engine) -> None:
    with engine.begin() as conn:
        for stmt in SCHEMA:
            conn.execute(text(stmt))


def database_file(engine: Engine) -> Optional[Path]:
    name = engine.url.database
    if not name or name == ":memory:":
        return None
    return Path(name)

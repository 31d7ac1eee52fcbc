# ======================================================================
#  File......: main.py
#  Purpose...: Single entrypoint: build the engine once, run tray (or
#              headless) until exit.
#  Version...: 0.4.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import argparse
import logging
import time
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from config import AppConfig, load_config
from controls import QueueControls
from database import get_engine
from failure_ledger import FailureLedger
from immich_api import SnapshotFetcher
from immich_client import ImmichClient
from metric_store import MetricStore, sweep_retention
from poller import Poller
from rate_estimator import RateEstimator
from scheduler import Handle, ThreadScheduler
from status_io import StatusFileWriter

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL_SEC = 3600.0
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", log_dir: Optional[str] = "logs") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for h in list(root.handlers):
        root.removeHandler(h)

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            Path(log_dir) / "immich_jobmon.log", maxBytes=2_000_000, backupCount=3, encoding="utf-8"
        )
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(fh)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class App:
    config: AppConfig
    client: ImmichClient
    metric_store: MetricStore
    failure_ledger: FailureLedger
    poller: Poller
    controls: QueueControls
    scheduler: ThreadScheduler
    handles: List[Handle]

    def run_maintenance(self) -> None:
        try:
            sweep_retention(self.metric_store, self.config.retention_days)
        except Exception:
            logger.exception("Retention sweep failed")

    def close(self) -> None:
        self.poller.stop()
        for h in self.handles:
            h.cancel()
        self.client.close()
        self.metric_store.engine.dispose()


def build_app(conf: AppConfig) -> App:
    """Construct every component once and wire references explicitly."""
    engine = get_engine(conf.database_path)
    metric_store = MetricStore(engine)
    failure_ledger = FailureLedger(engine)

    client = ImmichClient(conf.server_url, conf.api_key, timeout_sec=conf.request_timeout_sec)
    scheduler = ThreadScheduler()
    poller = Poller(
        fetcher=SnapshotFetcher(client),
        scheduler=scheduler,
        interval_sec=conf.poll_interval_sec,
        estimator=RateEstimator(),
        metric_store=metric_store,
        failure_ledger=failure_ledger,
    )
    poller.subscribe(StatusFileWriter(conf.status_path, lambda: poller.interval_sec))
    controls = QueueControls(client, poller=poller, ledger=failure_ledger)

    app = App(
        config=conf,
        client=client,
        metric_store=metric_store,
        failure_ledger=failure_ledger,
        poller=poller,
        controls=controls,
        scheduler=scheduler,
        handles=[],
    )
    app.handles.append(scheduler.schedule(MAINTENANCE_INTERVAL_SEC, app.run_maintenance, delay=60.0))
    return app


def _run_headless(app: App) -> None:
    app.poller.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Immich job queue monitor")
    parser.add_argument("--config", type=Path, default=None, help="Path to immich_jobmon.ini")
    parser.add_argument("--headless", action="store_true", help="Poll without the tray icon")
    parser.add_argument("--log-level", default=None, help="Override logging level")
    args = parser.parse_args(argv)

    conf = load_config(args.config)
    configure_logging(args.log_level or conf.log_level, conf.log_dir)

    if not conf.is_configured:
        logger.error("server_url and api_key are required (config file or IMMICH_* env vars)")
        return 2

    app = build_app(conf)
    try:
        if args.headless:
            _run_headless(app)
        else:
            import app_tray

            app_tray.TrayApp(app.poller, app.controls).run()
    finally:
        app.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

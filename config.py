# ======================================================================
#  File......: config.py
#  Purpose...: INI-backed settings (server, polling, storage, logging)
#              with environment variable overrides.
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

HERE = Path(__file__).resolve().parent
CONFIG_PATH = HERE / "immich_jobmon.ini"

MIN_POLL_INTERVAL_SEC = 1.0
MAX_POLL_INTERVAL_SEC = 30.0


@dataclass(frozen=True)
class AppConfig:
    server_url: str = ""
    api_key: str = ""
    poll_interval_sec: float = 3.0
    request_timeout_sec: float = 30.0

    data_dir: str = "data"
    retention_days: int = 30

    log_level: str = "INFO"
    log_dir: str = "logs"

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / "metrics.db"

    @property
    def status_path(self) -> Path:
        return Path(self.data_dir) / "status.json"

    @property
    def is_configured(self) -> bool:
        return bool(self.server_url and self.api_key)


def clamp_interval(value: float) -> float:
    """Keep the polling interval inside the range the settings UI allows."""
    return max(MIN_POLL_INTERVAL_SEC, min(MAX_POLL_INTERVAL_SEC, float(value)))


def _get(cfg: configparser.ConfigParser, section: str, key: str, default: str) -> str:
    if not cfg.has_section(section):
        return default
    return (cfg[section].get(key) or default).strip()


def load_config(path: Optional[Path] = None) -> AppConfig:
    """
    Load settings from the INI file, then apply environment overrides.

    Missing file or keys fall back to defaults; a malformed number falls
    back to the default and is logged.
    """
    path = Path(path) if path else CONFIG_PATH
    cfg = configparser.ConfigParser()
    if path.exists():
        cfg.read(path, encoding="utf-8")

    defaults = AppConfig()

    def number(section: str, key: str, default, cast):
        raw = _get(cfg, section, key, str(default))
        try:
            return cast(raw)
        except ValueError:
            logger.warning("Invalid %s.%s=%r in %s; using %s", section, key, raw, path, default)
            return default

    conf = AppConfig(
        server_url=_get(cfg, "immich", "server_url", defaults.server_url),
        api_key=_get(cfg, "immich", "api_key", defaults.api_key),
        poll_interval_sec=number("immich", "poll_interval_sec", defaults.poll_interval_sec, float),
        request_timeout_sec=number("immich", "request_timeout_sec", defaults.request_timeout_sec, float),
        data_dir=_get(cfg, "storage", "data_dir", defaults.data_dir),
        retention_days=number("storage", "retention_days", defaults.retention_days, int),
        log_level=_get(cfg, "logging", "level", defaults.log_level).upper(),
        log_dir=_get(cfg, "logging", "log_dir", defaults.log_dir),
    )

    # Environment wins over the file
    if os.getenv("IMMICH_SERVER_URL"):
        conf = replace(conf, server_url=os.getenv("IMMICH_SERVER_URL", "").strip())
    if os.getenv("IMMICH_API_KEY"):
        conf = replace(conf, api_key=os.getenv("IMMICH_API_KEY", "").strip())
    if os.getenv("IMMICH_POLL_INTERVAL"):
        try:
            conf = replace(conf, poll_interval_sec=float(os.getenv("IMMICH_POLL_INTERVAL", "")))
        except ValueError:
            logger.warning("Ignoring invalid IMMICH_POLL_INTERVAL=%r", os.getenv("IMMICH_POLL_INTERVAL"))
    if os.getenv("IMMICH_DATA_DIR"):
        conf = replace(conf, data_dir=os.getenv("IMMICH_DATA_DIR", ""))
    if os.getenv("IMMICH_LOG_LEVEL"):
        conf = replace(conf, log_level=os.getenv("IMMICH_LOG_LEVEL", "").upper())

    return replace(
        conf,
        server_url=conf.server_url.rstrip("/"),
        poll_interval_sec=clamp_interval(conf.poll_interval_sec),
    )


def save_config(conf: AppConfig, path: Optional[Path] = None) -> Path:
    """Write settings back to the INI file, in the layout load_config reads."""
    path = Path(path) if path else CONFIG_PATH
    cfg = configparser.ConfigParser()
    cfg["immich"] = {
        "server_url": conf.server_url,
        "api_key": conf.api_key,
        "poll_interval_sec": str(conf.poll_interval_sec),
        "request_timeout_sec": str(conf.request_timeout_sec),
    }
    cfg["storage"] = {
        "data_dir": conf.data_dir,
        "retention_days": str(conf.retention_days),
    }
    cfg["logging"] = {
        "level": conf.log_level,
        "log_dir": conf.log_dir,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        cfg.write(f)
    logger.info("Saved settings to %s", path)
    return path

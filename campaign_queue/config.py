"""INI configuration with ``CQ_`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with CQ_):
      CQ_CONFIG - Path to config.ini file (default: config.ini)
      CQ_LOG_LEVEL - Logging level (default: INFO)
      CQ_DB_PATH - Database path (default: /data/campaign_queue.db)
      CQ_HOST - Server host (default: 0.0.0.0)
      CQ_PORT - Server port (default: 8000)
      CQ_API_TOKEN - API authentication token
      CQ_WORKER_ACTIVE - Start the worker loop with the service (default: False)
      CQ_POLL_INTERVAL - Seconds between worker cycles (default: 10)
      CQ_BATCH_SIZE - Items claimed per cycle (default: 5)
      CQ_ITEM_DELAY - Seconds between two deliveries of a batch (default: 1)
      CQ_SEND_TIMEOUT - Per-delivery timeout in seconds (default: 30)
      CQ_MAX_ATTEMPTS - Attempts before an item fails for good (default: 3)
      CQ_RECLAIM_INTERVAL - Seconds between reclaimer sweeps (default: 300)
      CQ_STUCK_AFTER - Age in seconds of a stuck processing item (default: 300)
      CQ_DEFERRAL_SECONDS - Postponement applied on rate limit (default: 600)
      CQ_POOL_CLEANUP_INTERVAL - Seconds between SMTP pool sweeps (default: 150)
      CQ_LOG_DELIVERY_ACTIVITY - Log delivery activity (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [worker] start_active, poll_interval_seconds, batch_size, item_delay_seconds,
               send_timeout_seconds, max_attempts
      [reclaimer] interval_seconds, stuck_after_seconds
      [rate_limit] deferral_seconds
      [smtp] pool_cleanup_seconds
      [logging] delivery_activity
    """
    path = Path(config_path or os.getenv("CQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", os.getenv("CQ_DB_PATH", "/data/campaign_queue.db")),
        "http_host": get("server", "host", os.getenv("CQ_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("CQ_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("CQ_API_TOKEN")),
        "start_active": get_bool("worker", "start_active", os.getenv("CQ_WORKER_ACTIVE"), False),
        "poll_interval": get_float("worker", "poll_interval_seconds", os.getenv("CQ_POLL_INTERVAL"), 10.0),
        "batch_size": get_int("worker", "batch_size", os.getenv("CQ_BATCH_SIZE"), default=5),
        "item_delay": get_float("worker", "item_delay_seconds", os.getenv("CQ_ITEM_DELAY"), 1.0),
        "send_timeout": get_float("worker", "send_timeout_seconds", os.getenv("CQ_SEND_TIMEOUT"), 30.0),
        "max_attempts": get_int("worker", "max_attempts", os.getenv("CQ_MAX_ATTEMPTS"), default=3),
        "reclaim_interval": get_float("reclaimer", "interval_seconds", os.getenv("CQ_RECLAIM_INTERVAL"), 300.0),
        "stuck_after": get_int("reclaimer", "stuck_after_seconds", os.getenv("CQ_STUCK_AFTER"), default=300),
        "deferral_seconds": get_int(
            "rate_limit",
            "deferral_seconds",
            os.getenv("CQ_DEFERRAL_SECONDS"),
            default=600,
        ),
        "pool_cleanup_interval": get_float(
            "smtp", "pool_cleanup_seconds", os.getenv("CQ_POOL_CLEANUP_INTERVAL"), 150.0
        ),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("CQ_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


SERVICE_KEYS = (
    "db_path",
    "start_active",
    "poll_interval",
    "batch_size",
    "item_delay",
    "send_timeout",
    "max_attempts",
    "reclaim_interval",
    "stuck_after",
    "deferral_seconds",
    "pool_cleanup_interval",
    "log_delivery_activity",
)


def service_kwargs(settings: dict[str, object]) -> dict[str, object]:
    """Return the subset of ``settings`` accepted by :class:`QueueService`."""
    return {key: settings[key] for key in SERVICE_KEYS if settings.get(key) is not None}

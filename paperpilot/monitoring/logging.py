"""Structured logging configuration.

Everything is rendered as one JSON object per line. stdout gets the configured
level; ``<logs_path>/errors.log`` keeps ERROR and above across restarts.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys

import structlog

from paperpilot.config.settings import MonitoringConfig

QUIET_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "uvicorn.access")

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _error_log_handler(logs_path: str, monitoring: MonitoringConfig) -> RotatingFileHandler:
    log_dir = Path(logs_path)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / "errors.log",
        maxBytes=monitoring.error_log_max_bytes,
        backupCount=monitoring.error_log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.ERROR)
    return handler


def configure_logging(
    log_level: str = "INFO",
    logs_path: str | None = None,
    monitoring: MonitoringConfig | None = None,
) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    monitoring = monitoring or MonitoringConfig()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if logs_path:
        handlers.append(_error_log_handler(logs_path, monitoring))
    formatter = logging.Formatter("%(message)s")
    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Provider SDKs log full request URLs (and query-string API keys) at INFO.
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, structlog.processors.JSONRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def bind_cycle(job: str, cycle: int):
    """Context manager tagging every event logged inside it with the job and cycle number."""
    return structlog.contextvars.bound_contextvars(job=job, cycle=cycle)

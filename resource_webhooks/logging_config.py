"""structlog configuration shared by the API process and the retry worker."""

import logging
import sys

import structlog

from resource_webhooks.config import settings

_RENDERERS = ("console", "json", "kv")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    if log_format == "kv":
        return structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "logger", "event"],
            drop_missing=True,
        )
    return structlog.dev.ConsoleRenderer()


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Route stdlib logging and structlog through a single stdout handler.

    Args:
        level: Log level name (defaults to ``LOG_LEVEL``).
        log_format: One of ``console``, ``json`` or ``kv`` (defaults to ``LOG_FORMAT``).
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    fmt = (log_format or settings.LOG_FORMAT).lower()
    if fmt not in _RENDERERS:
        fmt = "console"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level_name)

    # httpx logs every request at INFO; delivery attempts are logged by the dispatcher
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(fmt),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

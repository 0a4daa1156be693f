"""Logging for the rate limiter.

Library modules only call ``get_logger(__name__)`` and attach decision
context through ``get_log_context``. Hosts that want tollbooth's own output
format call ``setup_logging()`` once at startup; otherwise records propagate
to whatever the host configured.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from tollbooth.core.config import settings

# Decision context attached to records through ``extra=``
CONTEXT_FIELDS = ("key", "algorithm", "storage", "count", "limit", "duration_ms")

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_STRUCTURED_FORMAT = _TEXT_FORMAT + " - key=%(key)s - algorithm=%(algorithm)s - storage=%(storage)s"

# Attributes every LogRecord carries; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Render each record as one JSON object per line.

    Context fields are promoted to top-level keys when set; other ``extra``
    values are grouped under ``"extra"``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        extra: Dict[str, Any] = {}
        for name, value in vars(record).items():
            if name in CONTEXT_FIELDS:
                if value is not None:
                    payload[name] = value
            elif name not in _RECORD_ATTRS:
                extra[name] = value
        if extra:
            payload["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Give every record the context attributes, defaulting to None.

    The structured text format references them directly.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        return True


def get_logging_config(
    level: Optional[str] = None, log_format: Optional[str] = None
) -> Dict[str, Any]:
    """Build a dictConfig mapping for the ``tollbooth`` logger tree.

    Args:
        level: Log level name, defaults to settings.log_level
        log_format: text, structured or json, defaults to settings.log_format

    Returns:
        Dict accepted by logging.config.dictConfig
    """
    level = (level or settings.log_level).upper()
    log_format = (log_format or settings.log_format).lower()

    formatters: Dict[str, Any] = {
        "standard": {"format": _TEXT_FORMAT},
        "structured": {"format": _STRUCTURED_FORMAT},
    }
    if log_format == "json":
        formatters["json"] = {"()": "tollbooth.core.logging.JSONFormatter"}
        formatter = "json"
    elif log_format == "structured":
        formatter = "structured"
    else:
        formatter = "standard"

    def stream_handler(handler_level: str, stream: Any) -> Dict[str, Any]:
        return {
            "class": "logging.StreamHandler",
            "level": handler_level,
            "formatter": formatter,
            "stream": stream,
            "filters": ["context"],
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {"context": {"()": "tollbooth.core.logging.ContextFilter"}},
        "handlers": {
            "console": stream_handler(level, sys.stdout),
            "error_console": stream_handler("ERROR", sys.stderr),
        },
        "loggers": {
            "tollbooth": {
                "level": level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            # redis-py logs connection churn at INFO
            "redis": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
    }


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Install tollbooth's handlers; arguments override settings."""
    logging.config.dictConfig(get_logging_config(level, log_format))


def get_logger(name: str = "tollbooth") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    key: Optional[str] = None,
    algorithm: Optional[str] = None,
    storage: Optional[str] = None,
    count: Optional[int] = None,
    limit: Optional[int] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Collect decision context for a logging ``extra=`` argument.

    None values are dropped so they do not overwrite filter defaults.

    Example:
        >>> logger.warning(
        ...     "Storage unavailable",
        ...     extra=get_log_context(key="ip:10.0.0.1", storage="RedisStorage"),
        ... )
    """
    context = dict(key=key, algorithm=algorithm, storage=storage, count=count, limit=limit)
    context.update(extra)
    return {name: value for name, value in context.items() if value is not None}

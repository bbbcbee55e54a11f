"""Logging setup for the resilience layer.

Everything logs through stdlib ``logging`` under the ``asdf_gateway``
namespace. Three output formats are supported (``text``, ``structured`` and
``json``); the JSON format lifts circuit, identifier and event context out of
``extra=`` so log aggregators can index them.
"""

import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from asdf_gateway.app.core.config import settings

ROOT_LOGGER = "asdf_gateway"
AUDIT_LOGGER = f"{ROOT_LOGGER}.audit"

# Context attributes promoted to top-level keys in JSON output
CONTEXT_FIELDS = (
    "request_id",
    "circuit",
    "identifier",   # Always the hashed form
    "tier",
    "endpoint",
    "event_type",
    "path",
    "method",
    "status_code",
    "duration_ms",
)

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

_TEXT_FORMATS = {
    "standard": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    "structured": (
        "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
        " [circuit=%(circuit)s identifier=%(identifier)s event_type=%(event_type)s]"
    ),
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Known context attributes become top-level keys, audit records get an
    ``audit`` block, and any remaining ``extra=`` values go under ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        extra: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            if key in CONTEXT_FIELDS:
                if value is not None:
                    entry[key] = value
            else:
                extra[key] = value

        if "audit_event" in extra:
            entry["audit"] = {
                "event": extra.pop("audit_event"),
                "payload": extra.pop("payload", None),
            }
        if extra:
            entry["extra"] = extra

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Default missing context attributes to None so text formats never fail."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, None)
        return True


def _formatter_config(log_format: str) -> Dict[str, Any]:
    if log_format == "json":
        return {"()": f"{__name__}.JSONFormatter"}
    return {"format": _TEXT_FORMATS.get(log_format, _TEXT_FORMATS["standard"])}


def get_logging_config(log_format: Optional[str] = None, log_level: Optional[str] = None) -> Dict[str, Any]:
    """dictConfig for the gateway; arguments default to the settings values."""
    log_format = (log_format or settings.log_format).lower()
    log_level = (log_level or settings.log_level).upper()

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": _formatter_config(log_format)},
        "filters": {"context": {"()": f"{__name__}.ContextFilter"}},
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "default",
                "filters": ["context"],
                "stream": sys.stdout,
            },
            "stderr": {
                "class": "logging.StreamHandler",
                "level": "ERROR",
                "formatter": "default",
                "filters": ["context"],
                "stream": sys.stderr,
            },
        },
        "loggers": {
            ROOT_LOGGER: {
                "level": log_level,
                "handlers": ["stdout", "stderr"],
                "propagate": False,
            },
            # Audit trail stays on even when the service logs at WARNING
            AUDIT_LOGGER: {
                "level": "INFO",
                "handlers": ["stdout"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["stdout"],
                "propagate": False,
            },
        },
        "root": {"level": log_level, "handlers": ["stdout"]},
    }


def setup_logging() -> None:
    logging.config.dictConfig(get_logging_config())

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping, dropping fields that are None.

    Example:
        >>> logger.info("Circuit opened", extra=get_log_context(circuit="helius"))
    """
    return {key: value for key, value in fields.items() if value is not None}

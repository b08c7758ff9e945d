"""Structured logging configuration."""
import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra`` keys (ticket_id, session_id, stage...) become top-level fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if not key.startswith("_") and key not in _RESERVED_ATTRS and key not in payload
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str, log_format: str = "json") -> None:
    """Route every logger to stdout as JSON lines (or plain text for local runs)."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": JsonFormatter},
                "text": {"format": TEXT_FORMAT},
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "text" if log_format == "text" else "json",
                }
            },
            "root": {"level": level, "handlers": ["stdout"]},
            "loggers": {
                "httpx": {"level": "WARNING"},
            },
        }
    )

"""JSON logging for Weixin Relay.

Every record is one JSON line. Records about a subscriber carry its open id as a
top-level ``user_id`` so one conversation can be followed across stages and
background tasks; any other structured fields stay under ``context``.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        user_id = context.pop("user_id", None)
        if user_id is not None:
            log_data["user_id"] = user_id
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Route every logger through a single stdout JSON handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"weixin_relay.{name}")


class UserLogger(logging.LoggerAdapter):
    """Logger bound to one subscriber; per-call ``context=`` is merged in."""

    def __init__(self, logger: logging.Logger, user_id: str, **bound: Any):
        super().__init__(logger, {"user_id": user_id, **bound})

    @property
    def user_id(self) -> str:
        return self.extra["user_id"]

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context: Optional[dict] = kwargs.pop("context", None)
        kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs

"""Structured JSON logging for Reel Analyzer.

Every record is one JSON object per line. Records emitted through a run
logger carry the pipeline context (post_id, flow, state) so a single
request can be followed from CacheCheck to Done with one filter.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON objects.

    Output format:
        {"ts": "2026-01-23T10:30:00.123456+00:00", "level": "INFO",
         "logger": "reel_analyzer.core.pipeline", "msg": "Cache hit",
         "post_id": "analysis_C9xYz12AbCd", "flow": "analyze",
         "state": "cache_check"}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="microseconds"
            ),
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        if record.name and record.name != "root":
            entry["logger"] = record.name

        entry.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        )

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class PostLoggerAdapter(logging.LoggerAdapter):
    """Stamps pipeline context on every record.

    Context fields never override a key the call site passes in extra=.

    Usage:
        log = get_post_logger(__name__, "C9xYz12AbCd", flow="lookup")
        log.info("Fetching")  # post_id and flow attached
    """

    def __init__(self, logger: logging.Logger, post_id: str, **context: Any):
        super().__init__(logger, {"post_id": post_id, **context})

    def process(
        self, msg: str, kwargs: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def setup_logging(level: str = "INFO", stream: Any = None) -> None:
    """Send every record to stream (stderr by default) as JSON.

    Replaces whatever handlers the root logger had.
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name)


def get_post_logger(name: str, post_id: str, **context: Any) -> PostLoggerAdapter:
    """Logger adapter bound to one post (or cache key).

    Args:
        name: Logger name (typically __name__).
        post_id: The post identifier or cache key being processed.
        **context: Further fields to stamp, e.g. flow and state.
    """
    return PostLoggerAdapter(get_logger(name), post_id, **context)


def reset_logging() -> None:
    """Drop root handlers and restore the WARNING level. Used by tests."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.WARNING)

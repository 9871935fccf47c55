"""Logging configuration for clawnest.

Module loggers attach an ``event`` (LogEvent) and usually an
``instance_id`` through ``extra``. Both output formats surface them:

- text: ``... - message [deploy_phase bot1]`` for local development
- json: top-level ``event`` / ``instance_id`` / ``engine`` fields for log
  aggregation
"""

import logging
import sys
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import json as jsonlogger

from clawnest.config import LoggingConfig
from clawnest.logging_schema import LogEvent

# Outcome lines are never rate limited
UNTHROTTLED_EVENTS = frozenset(
    event.value
    for event in (
        LogEvent.DEPLOY_COMPLETED,
        LogEvent.DEPLOY_FAILED,
        LogEvent.DEPLOY_CANCELLED,
        LogEvent.INSTANCE_REMOVED,
    )
)

# Context extras promoted to first-class fields
CONTEXT_FIELDS = ("event", "instance_id", "engine")


def _context(record: logging.LogRecord) -> dict[str, str | None]:
    values: dict[str, str | None] = {}
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        values[name] = None if value is None else str(value)
    return values


class RateLimitFilter(logging.Filter):
    """Drop repeats of the same line for the same instance.

    Deploy wait loops log the same progress line every poll interval.
    Repeats are keyed per instance, so two deploys running side by side
    never silence each other, and a DEPLOY_STARTED line forgets the
    instance's history so a redeploy logs from a clean slate.

    Args:
        rate_limit_seconds: Minimum seconds between identical lines (default: 5)
        max_cache_size: Maximum number of keys remembered (default: 1000)
    """

    def __init__(
        self,
        rate_limit_seconds: float = 5.0,
        max_cache_size: int = 1000,
        name: str = "",
    ) -> None:
        super().__init__(name)
        self._rate_limit = rate_limit_seconds
        self._max_cache = max_cache_size
        self._seen: OrderedDict[tuple[str | None, str, str], float] = OrderedDict()

    def filter(self, record: logging.LogRecord) -> bool:
        context = _context(record)
        instance_id, event = context["instance_id"], context["event"]

        if event == LogEvent.DEPLOY_STARTED and instance_id is not None:
            self.forget(instance_id)
        if record.levelno >= logging.ERROR or event in UNTHROTTLED_EVENTS:
            return True

        key = (instance_id, f"{record.name}:{record.lineno}", record.getMessage())
        now = time.monotonic()
        last = self._seen.get(key)
        if last is not None and now - last < self._rate_limit:
            return False

        self._seen[key] = now
        self._seen.move_to_end(key)
        while len(self._seen) > self._max_cache:
            self._seen.popitem(last=False)
        return True

    def forget(self, instance_id: str) -> None:
        for key in [k for k in self._seen if k[0] == instance_id]:
            del self._seen[key]


class NestTextFormatter(logging.Formatter):
    """Plain formatter that appends ``[event instance_id]`` when present."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        tags = [v for v in (context["event"], context["instance_id"]) if v]
        if not tags:
            return line
        return f"{line} [{' '.join(tags)}]"


class NestJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter for log aggregation.

    Every record carries timestamp, level, logger, service and pid, plus
    the context fields event, instance_id and engine (null when the call
    site did not set them) so queries can always filter on them.
    """

    def __init__(self, config: LoggingConfig, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._service = config.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self._service
        log_record["pid"] = record.process
        log_record.update(_context(record))

        if record.exc_info and record.exc_info[0] is not None:
            log_record["exc_type"] = record.exc_info[0].__name__
            log_record["exception"] = self.formatException(record.exc_info)


def setup_logging(config: LoggingConfig) -> None:
    """Install the manager's stdout handler on the root logger.

    Args:
        config: Logging configuration settings.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    if config.format == "json":
        formatter: logging.Formatter = NestJsonFormatter(config)
    else:
        formatter = NestTextFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(RateLimitFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # One line per Docker API call otherwise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

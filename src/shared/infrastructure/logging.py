"""
Structured Logging
==================

JSON logs for the automation service via python-json-logger.

Every record carries a UTC timestamp and the environment name; records
emitted inside a request or an evaluation pass also carry its
correlation_id, so one ticket event can be followed through every rule it
touched.

    from src.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Automation rule fired", extra={"rule_id": rule.id, "ticket_id": "T1"})
"""

import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, MutableMapping, Optional, Union

from pythonjsonlogger import jsonlogger


_SENSITIVE_KEYS = ("password", "token", "api_key", "webhook_url")

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "apscheduler", "httpx", "watchdog")

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, environment and correlation_id; masks secrets."""

    def __init__(self, *args: Any, environment: str = "unknown", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.environment = environment

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        log_record["environment"] = self.environment
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id is not None:
            log_record["correlation_id"] = correlation_id

        for key, value in list(log_record.items()):
            if isinstance(value, str) and any(s in key.lower() for s in _SENSITIVE_KEYS):
                log_record[key] = "***REDACTED***"


def setup_logging(level: str = "INFO", environment: str = "development") -> None:
    """
    Route all logging to stdout as JSON.

    Called once from the application lifespan; replaces any handlers
    installed earlier (uvicorn's default config included).
    """
    numeric_level = getattr(logging, level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(CustomJsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        environment=environment,
    ))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges its context into per-call `extra`."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_context_logger(name: str, correlation_id: Optional[str] = None) -> LoggerLike:
    """
    Logger bound to a correlation ID.

    The orchestrator binds one per lifecycle event so the trigger, condition
    and action logs of a whole derived-event chain share an ID.
    """
    logger = get_logger(name)
    if not correlation_id:
        return logger
    return ContextLoggerAdapter(logger, {"correlation_id": correlation_id})


@contextmanager
def log_latency(logger: LoggerLike, operation: str, **extra_context: Any) -> Iterator[None]:
    """
    Log "<operation> completed" with latency_ms when the block exits.

    Logged on success and on error alike:

        with log_latency(log, "automation_event", ticket_id="T1"):
            ...
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.info(
            f"{operation} completed",
            extra={
                "operation": operation,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                **extra_context,
            },
        )

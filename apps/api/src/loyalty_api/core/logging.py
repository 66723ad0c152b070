"""JSON logging for the loyalty service.

Every line carries the service identity plus, when bound, the loyalty
correlation ids (merchant, customer, redemption, webhook event, payment) under a
single ``loyalty`` key so one purchase can be followed from webhook to
confirmation. Remaining bound values land under ``context``.
"""

from __future__ import annotations

import json
import logging
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


CORRELATION_KEYS = (
    "merchant_id",
    "customer_id",
    "redemption_id",
    "event_id",
    "external_id",
    "payment_id",
    "refund_id",
    "reward_id",
)

_STDLIB_RECORD_ATTRS = frozenset(vars(LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "celery.worker.strategy", "httpx")


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, sqlalchemy, celery, httpx) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extra = {key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_ATTRS}
        bound_logger = logger.bind(**extra) if extra else logger
        bound_logger.opt(depth=6, exception=record.exc_info).log(level, "{}", record.getMessage())


def build_payload(record: Dict[str, Any], metadata: Dict[str, str]) -> Dict[str, Any]:
    """Shape a Loguru record into the service's JSON log line."""

    payload: Dict[str, Any] = {
        "ts": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "msg": record["message"],
        "logger": record["name"],
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    extra = dict(record["extra"])
    correlation = {key: extra.pop(key) for key in CORRELATION_KEYS if extra.get(key) is not None}
    if correlation:
        payload["loyalty"] = correlation
    if extra:
        payload["context"] = extra
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    return payload


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Install the JSON Loguru sink and bridge stdlib logging into it."""

    metadata = {"service": service_name, "environment": environment, "version": version}

    def sink(message: "logger.Message") -> None:
        print(json.dumps(build_payload(message.record, metadata), default=str))

    logger.remove()
    logger.add(sink, level=level.upper(), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

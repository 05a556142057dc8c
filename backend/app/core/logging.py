"""Structured logging for the billing service.

Records are rendered as one JSON object per line. Billing identifiers passed
through ``extra`` (user, customer, subscription, price and schedule ids) are
lifted to the top level so operators can filter on them; any other field is
nested under ``context``. The correlation id bound for the current request or
script run is attached to every record.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Optional

CORRELATION_ID_HEADER = "X-Correlation-ID"

TOP_LEVEL_FIELDS = frozenset({
    "user_id",
    "customer_id",
    "subscription_id",
    "price_id",
    "schedule_id",
})

_correlation_id: ContextVar[Optional[str]] = ContextVar("billing_correlation_id", default=None)

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "correlation_id"}


def bind_correlation_id(value: Optional[str] = None) -> Token:
    """Bind ``value`` (or a fresh id) as the correlation id of this context."""
    return _correlation_id.set(value or uuid.uuid4().hex)


def reset_correlation_id(token: Token) -> None:
    _correlation_id.reset(token)


def current_correlation_id() -> Optional[str]:
    return _correlation_id.get()


class StructuredFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def __init__(self, service_name: str = "billing"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": current_correlation_id(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        context = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            if key in TOP_LEVEL_FIELDS:
                payload[key] = value
            else:
                context[key] = value
        if context:
            payload["context"] = context

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            payload["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": "".join(traceback.format_exception(*record.exc_info)),
            }

        return json.dumps(payload, default=str)


class _CorrelationIdFilter(logging.Filter):
    # Plain-text format references %(correlation_id)s
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = current_correlation_id() or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "billing",
) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Log level name
        json_format: Emit JSON lines instead of plain text
        service_name: Value of the ``service`` field on JSON records
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(correlation_id)s] %(name)s: %(message)s"
        ))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in ("uvicorn.access", "sqlalchemy.engine", "stripe"):
        logging.getLogger(name).setLevel(logging.WARNING)


def log_info(logger: logging.Logger, message: str, **extra: Any) -> None:
    logger.info(message, extra=extra)


def log_warning(logger: logging.Logger, message: str, **extra: Any) -> None:
    logger.warning(message, extra=extra)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log an error, attaching the exception's traceback when given."""
    logger.error(message, exc_info=exception, extra=extra)

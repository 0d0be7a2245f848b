"""Structured JSON logging with request, intent and job correlation fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from orderpipe.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
payment_intent_id_ctx: ContextVar[str] = ContextVar("payment_intent_id", default="")
job_id_ctx: ContextVar[str] = ContextVar("job_id", default="")

_CONTEXT_FIELDS = {
    "trace_id": trace_id_ctx,
    "payment_intent_id": payment_intent_id_ctx,
    "job_id": job_id_ctx,
}

# Libraries that log one line per outbound call; gateway calls are already measured.
_QUIET_LOGGERS = ("httpx", "httpcore")


class ContextFilter(logging.Filter):
    """Copy the service name and every bound correlation id onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in _CONTEXT_FIELDS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def log_context(**fields: str | None):
    """Bind correlation ids for the duration of a block, e.g. one queued job."""

    tokens = [
        (_CONTEXT_FIELDS[field], _CONTEXT_FIELDS[field].set(str(value)))
        for field, value in fields.items()
        if value
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(payment_intent_id)s %(job_id)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level"},
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("orderpipe")

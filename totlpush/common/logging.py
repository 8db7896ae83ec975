"""Structured JSON logging with request/intent context fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from totlpush.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
notification_key_ctx: ContextVar[str] = ContextVar("notification_key", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.notification_key = notification_key_ctx.get()
        record.event_id = event_id_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(notification_key)s %(event_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("totlpush")


@contextmanager
def log_context(trace_id: str | None = None, notification_key: str | None = None, event_id: str | None = None):
    """Bind correlation fields for the duration of one request or intent."""

    tokens = [
        (var, var.set(value))
        for var, value in (
            (trace_id_ctx, trace_id),
            (notification_key_ctx, notification_key),
            (event_id_ctx, event_id),
        )
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)

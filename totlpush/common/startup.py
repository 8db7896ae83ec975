"""Startup-time config logging with secret redaction."""

from typing import Any

from totlpush.common.config import settings
from totlpush.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def _display(field: str) -> Any:
    value = getattr(settings, field, None)
    if value is None or value == "":
        return "<unset>"
    if any(marker in field for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def log_startup_config(fields: list[str]) -> None:
    """Log selected settings so a misconfigured deploy is obvious in the first line."""

    config = {"service": settings.service_name}
    config.update({field: _display(field) for field in fields})
    logger.info("startup_config=%s", config)

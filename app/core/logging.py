"""Logging setup with a per-request correlation id and body redaction."""

import logging
import sys
from contextvars import ContextVar
from typing import Any

correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="-")

REDACTED = "***"

SENSITIVE_KEYS = {
    "paRes",
    "PaRes",
    "paReq",
    "PaReq",
    "authenticationToken",
    "number",
    "securityCode",
    "password",
    "token",
    "successIndicator",
}


class CorrelationFilter(logging.Filter):
    """Inject the current correlation id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_ctx.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)


def redact(body: Any) -> Any:
    """Return a copy of a JSON-like body with sensitive values masked."""
    if isinstance(body, dict):
        return {
            k: (REDACTED if k in SENSITIVE_KEYS and v not in (None, "") else redact(v))
            for k, v in body.items()
        }
    if isinstance(body, list):
        return [redact(item) for item in body]
    return body

"""
Structured logging for the API process and the background jobs.

Everything is rendered as one JSON object per line on stdout. Context bound with
``bind_invocation`` (group id, job name, trigger kind) rides along on every line
until ``clear_invocation`` is called at the start of the next request.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

from portfolio_api.security.hashing import mask_email

# Keys whose values may hold a recipient address
_ADDRESS_KEYS = ("email", "to", "recipient", "recipient_email")

_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _mask_addresses(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in _ADDRESS_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and "@" in value and "***" not in value:
            event_dict[key] = mask_email(value)
    return event_dict


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structlog over stdlib logging.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL; unknown names fall back to INFO
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _mask_addresses,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_invocation(**fields: Any) -> None:
    """Attach fields to every log line for the rest of this request or job run."""
    structlog.contextvars.bind_contextvars(**fields)


def clear_invocation() -> None:
    structlog.contextvars.clear_contextvars()


def log_request(method: str, path: str, status_code: int, duration_ms: float) -> None:
    """One access-log line per HTTP request; 4xx/5xx go out at warning."""
    logger = get_logger("http")
    fields = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }
    if status_code >= 400:
        logger.warning("HTTP request failed", **fields)
    else:
        logger.info("HTTP request completed", **fields)

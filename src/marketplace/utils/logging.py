"""Logging configuration for the marketplace service.

Every module logs through ``structlog.get_logger(__name__)`` with keyword
context. ``configure_logging`` wires structlog onto the stdlib root logger
once per process: JSON lines in production and staging, a rich console
renderer everywhere else. Payment secrets that reach a log call are masked
before rendering.
"""

import logging
import os
import sys
from typing import Any

import structlog

from marketplace.config import Settings

SERVICE_NAME = "kapcdam-marketplace"

_LEVELS = {
    "production": "INFO",
    "staging": "INFO",
    "development": "DEBUG",
    "test": "WARNING",
}

# Keys whose values identify a payment to the gateway
_MASKED_KEYS = frozenset({"confirmation_code", "signature", "gateway_signature", "payment_token"})


def get_log_level(env: str) -> str:
    return os.getenv("LOG_LEVEL", _LEVELS.get(env, "INFO")).upper()


def mask_payment_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Keep the last four characters of gateway secrets, mask the rest."""
    for key in _MASKED_KEYS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, str) and value:
            event_dict[key] = "*" * max(len(value) - 4, 0) + value[-4:]
    return event_dict


def add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _setup_stdlib_logging(level: str) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    # Suppress noisy library loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _renderers(env: str) -> list[Any]:
    if env in ("production", "staging"):
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    console = structlog.dev.ConsoleRenderer(
        colors=env != "test",
        exception_formatter=structlog.dev.RichTracebackFormatter(show_locals=False, max_frames=4),
    )
    return [console]


def configure_logging(settings: Settings | None = None) -> None:
    """Configure stdlib and structlog logging for the given settings' environment."""
    env = (settings or Settings.from_env()).env
    _setup_stdlib_logging(get_log_level(env))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_service,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            mask_payment_secrets,
            *_renderers(env),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def add_context(**kwargs: Any) -> None:
    """Bind values (request id, caller) to every log line of the current context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()

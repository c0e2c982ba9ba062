"""Structured logging for the ask service.

``configure_logging`` wires structlog and the stdlib root logger onto one
processor chain so uvicorn/httpx records and our own events render the same
way. Modules get their logger with ``structlog.get_logger(__name__)``.
"""
import logging
from typing import Optional

import structlog

from backend.app.core.config import settings


def configure_logging(force: bool = False) -> None:
    configured = getattr(structlog, "_ask_configured", False)
    if configured and not force:
        return

    if settings.LOG_PRETTY:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[structlog.contextvars.merge_contextvars],
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    structlog.configure(
        processors=shared_processors + [renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    setattr(structlog, "_ask_configured", True)


def bind_request_context(request_id: Optional[str] = None, user_id: Optional[str] = None) -> None:
    """Bind ids into structlog contextvars so every later event carries them."""
    payload = {}
    if request_id:
        payload["request_id"] = request_id
    if user_id:
        payload["user_id"] = user_id
    if payload:
        structlog.contextvars.bind_contextvars(**payload)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()

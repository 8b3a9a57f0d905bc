"""structlog setup shared by library callers and tests."""

from __future__ import annotations

import logging

import structlog


def configure_logging(level: str = "INFO", *, json: bool = True) -> None:
    """Configure structlog processors and the stdlib root level."""
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(message)s")

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
    )


def configure_from_settings() -> None:
    """Apply LOG_LEVEL / LOG_JSON from settings."""
    from exolix.config import get_settings

    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)

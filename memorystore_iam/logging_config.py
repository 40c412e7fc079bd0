from __future__ import annotations

import logging
import sys
from typing import Any, Callable, MutableMapping

import structlog

from .config import Settings


def _app_context(settings: Settings) -> Callable[..., MutableMapping[str, Any]]:
    """
    Build a processor that enriches log records with basic app context (name, env).
    """

    def _add_app_context(
        logger: structlog.BoundLogger,
        method_name: str,
        event_dict: MutableMapping[str, Any],
    ) -> MutableMapping[str, Any]:
        event_dict["app"] = settings.app_name
        event_dict["env"] = settings.env
        return event_dict

    return _add_app_context


def setup_logging(settings: Settings) -> None:
    """
    Configure structlog + stdlib logging.

    Logs go to stderr so that stdout carries only the driver's result line.
    Call this once at startup.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    # Configure root logging for libraries (redis, grpc, google-auth)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )

    # grpc and google-auth are chatty at DEBUG
    logging.getLogger("google.auth").setLevel(max(level, logging.INFO))
    logging.getLogger("grpc").setLevel(max(level, logging.INFO))

    renderer: Any
    if settings.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    processors = [
        structlog.contextvars.merge_contextvars,  # include bound contextvars
        _app_context(settings),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]
    # ConsoleRenderer formats exceptions itself
    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

"""Sentry initialization and unified logging for the runner."""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from . import __version__

if TYPE_CHECKING:
    from .config import RunnerConfig

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEV_TRACES_SAMPLE_RATE = 1.0


def configure_logging(
    service_name: str,
    log_level: int | str = logging.INFO,
    json_format: bool = False,
) -> structlog.stdlib.BoundLogger:
    """Configure structlog on top of stdlib logging.

    Call once at startup, after init_sentry().

    Args:
        service_name: Name of the service for log context
        log_level: Minimum log level (name or number)
        json_format: Render JSON lines instead of the colored console format

    Returns:
        Configured structlog logger
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.CallsiteParameterAdder(
            [
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
        # Must see the raw exc_info, before any renderer formats it
        add_sentry_context,
    ]

    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


# Event fields set as Sentry tags rather than extras
SESSION_TAGS = ("workspace_id", "sid")

_STANDARD_KEYS = frozenset(
    {"event", "level", "timestamp", "logger", "filename", "lineno", "exc_info"}
)


def session_context(sid: str, workspace_id: str) -> AbstractContextManager[None]:
    """Bind a session's identity to every log event emitted inside the block."""
    return structlog.contextvars.bound_contextvars(sid=sid, workspace_id=workspace_id)


def add_sentry_context(
    _logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mirror structlog events into Sentry breadcrumbs and capture errors."""
    level = event_dict.get("level", "info")
    message = str(event_dict.get("event", ""))
    extra_data = {k: v for k, v in event_dict.items() if k not in _STANDARD_KEYS}

    sentry_sdk.add_breadcrumb(
        message=message,
        category=event_dict.get("logger") or "runner",
        level=level,
        data=extra_data or None,
    )

    if method_name not in ("error", "exception", "critical"):
        return event_dict

    with sentry_sdk.isolation_scope() as scope:
        for key, value in extra_data.items():
            if key in SESSION_TAGS:
                scope.set_tag(key, str(value))
            else:
                scope.set_extra(key, value)

        error = _exception_from(event_dict.get("exc_info"))
        if error is not None:
            sentry_sdk.capture_exception(error)
        else:
            sentry_sdk.capture_message(
                message, level="error" if method_name == "error" else "fatal"
            )

    return event_dict


def _exception_from(exc_info: Any) -> BaseException | None:
    if exc_info is True:
        exc_info = sys.exc_info()
    if isinstance(exc_info, BaseException):
        return exc_info
    if isinstance(exc_info, tuple):
        return exc_info[1]
    return None


def init_sentry(config: RunnerConfig) -> bool:
    """Initialize Sentry when a DSN is configured.

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    if not config.sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=config.sentry_dsn,
        environment=config.environment,
        release=f"codexa-runner@{__version__}",
        traces_sample_rate=(
            DEV_TRACES_SAMPLE_RATE if config.is_development() else DEFAULT_TRACES_SAMPLE_RATE
        ),
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
            AsyncioIntegration(),
            # add_sentry_context records breadcrumbs and events for every log line
            LoggingIntegration(level=None, event_level=None),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        server_name="codexa-runner",
        ignore_errors=[
            "ConnectionResetError",
            "BrokenPipeError",
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )
    sentry_sdk.set_tag("service", "codexa-runner")
    return True

"""Logging and Sentry setup for the entitlement service."""

from __future__ import annotations

import logging
import os
import re
import sys
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

if TYPE_CHECKING:
    from sentry_sdk.types import Event

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEV_TRACES_SAMPLE_RATE = 1.0

# Field names whose values never reach log output
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "apikey",
        "authorization",
        "cookie",
        "credential",
        "signature",
        "sig_header",
        "stripe_secret",
        "webhook_secret",
        "jwt_secret",
        "private_key",
        "database_url",
    }
)

SENSITIVE_PATTERNS = [
    re.compile(r"eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*"),
    re.compile(r"Bearer\s+[A-Za-z0-9_-]+", re.IGNORECASE),
    re.compile(r"(sk|rk)_(live|test)_[A-Za-z0-9]{10,}"),
    re.compile(r"whsec_[A-Za-z0-9]{10,}"),
    re.compile(r"t=\d+,v1=[a-f0-9]{32,}"),
]

REDACTED = "***REDACTED***"

SENSITIVE_HEADERS = ("authorization", "cookie", "stripe-signature", "x-api-key")


def _is_sensitive_field(key: str) -> bool:
    key_lower = key.lower().replace("-", "_")
    return any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS)


def _redact_value(value: str) -> str:
    for pattern in SENSITIVE_PATTERNS:
        if pattern.search(value):
            return REDACTED
    return value


def _redact_dict(data: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in list(data.keys()):
        value = data[key]
        if _is_sensitive_field(key):
            data[key] = REDACTED
        elif isinstance(value, MutableMapping):
            _redact_dict(value)
        elif isinstance(value, str):
            data[key] = _redact_value(value)
    return data


def redact_sensitive_data(
    logger: Any,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor that masks secrets, signatures and bearer tokens."""
    return _redact_dict(event_dict)


def _add_sentry_breadcrumb(
    _logger: Any,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Mirror log events into Sentry breadcrumbs and report error-level events."""
    message = str(event_dict.get("event", ""))
    standard_keys = {"event", "level", "timestamp", "logger", "filename", "lineno"}
    extra_data = {k: v for k, v in event_dict.items() if k not in standard_keys}

    sentry_sdk.add_breadcrumb(
        message=message,
        category="log",
        level=event_dict.get("level", "info"),
        data=extra_data or None,
    )

    if method_name in ("error", "exception", "critical"):
        exc_info = event_dict.get("exc_info")
        if isinstance(exc_info, BaseException):
            sentry_sdk.capture_exception(exc_info)
        elif isinstance(exc_info, tuple):
            sentry_sdk.capture_exception(exc_info[1])
        elif exc_info:
            sentry_sdk.capture_exception()
        else:
            with sentry_sdk.isolation_scope() as scope:
                for key, value in extra_data.items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_message(
                    message, level="error" if method_name == "error" else "fatal"
                )

    return event_dict


def configure_logging(
    service_name: str,
    log_level: int | str = logging.INFO,
    json_format: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """
    Configure stdlib logging and structlog for the service.

    Call once at startup, after init_sentry().

    Args:
        service_name: Logger name bound to the returned logger
        log_level: Minimum log level
        json_format: JSON output (True) or console output (False). None picks
                     console in development and JSON everywhere else.

    Returns:
        Configured structlog logger
    """
    if json_format is None:
        json_format = os.environ.get("ENVIRONMENT", "development") != "development"
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        redact_sensitive_data,
        _add_sentry_breadcrumb,
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if json_format:
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


@dataclass
class SentryConfig:
    """Configuration for Sentry SDK initialization."""

    service_name: str
    dsn: str | None = None
    environment: str | None = None
    release: str | None = None
    traces_sample_rate: float | None = None
    enable_db_tracing: bool = True
    enable_redis_tracing: bool = True
    additional_integrations: list[Any] = field(default_factory=list)


def _build_integrations(cfg: SentryConfig) -> list[Any]:
    integrations: list[Any] = [
        StarletteIntegration(transaction_style="endpoint"),
        FastApiIntegration(transaction_style="endpoint"),
        AsyncioIntegration(),
        LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
    ]
    if cfg.enable_db_tracing:
        integrations.append(SqlalchemyIntegration())
    if cfg.enable_redis_tracing:
        integrations.append(RedisIntegration())
    integrations.extend(cfg.additional_integrations)
    return integrations


def _scrub_event(event: Event, _hint: dict[str, Any]) -> Event | None:
    request = event.get("request")
    if request is not None:
        headers = request.get("headers")
        if isinstance(headers, dict):
            for header in list(headers):
                if header.lower() in SENSITIVE_HEADERS:
                    headers[header] = "[Filtered]"
    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in list(extra):
            if _is_sensitive_field(key):
                extra[key] = "[Filtered]"
    return event


def _drop_health_transactions(event: Event, _hint: dict[str, Any]) -> Event | None:
    if event.get("transaction", "") in ("/health", "health_check"):
        return None
    return event


def init_sentry(config: SentryConfig) -> bool:
    """
    Initialize Sentry SDK.

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    dsn = config.dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = config.environment or os.environ.get("ENVIRONMENT", "development")
    traces_rate = config.traces_sample_rate
    if traces_rate is None:
        traces_rate = (
            DEFAULT_TRACES_SAMPLE_RATE if environment == "production" else DEV_TRACES_SAMPLE_RATE
        )

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=config.release or f"{config.service_name}@{os.environ.get('VERSION', '0.1.0')}",
        traces_sample_rate=traces_rate,
        integrations=_build_integrations(config),
        before_send=_scrub_event,
        before_send_transaction=_drop_health_transactions,
        send_default_pii=False,
        attach_stacktrace=True,
        server_name=config.service_name,
        ignore_errors=["asyncio.CancelledError", "KeyboardInterrupt", "SystemExit"],
    )
    sentry_sdk.set_tag("service", config.service_name)
    return True


def capture_message(
    message: str,
    *,
    level: str = "info",
    tags: dict[str, str] | None = None,
    extra: dict[str, Any] | None = None,
) -> str | None:
    """
    Send a message to Sentry for operator alerting.

    Returns:
        The Sentry event ID, or None if Sentry is not initialized
    """
    with sentry_sdk.isolation_scope() as scope:
        scope.set_level(level)  # type: ignore[arg-type]
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_message(message)


def capture_exception(
    error: BaseException,
    *,
    tags: dict[str, str] | None = None,
    extra: dict[str, Any] | None = None,
) -> str | None:
    """Send an exception to Sentry with optional tags and context."""
    with sentry_sdk.isolation_scope() as scope:
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)

"""Logging configuration and Sentry SDK initialization for the preview gateway."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, cast
from urllib.parse import parse_qsl, urlencode

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

if TYPE_CHECKING:
    from sentry_sdk.types import Event

EventCallback = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any] | None]

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEFAULT_PROFILES_SAMPLE_RATE = 0.1
DEV_TRACES_SAMPLE_RATE = 1.0

SENSITIVE_HEADERS = ("authorization", "cookie", "x-internal-service-token", "x-api-key")
SENSITIVE_KEYS = ("password", "token", "secret", "api_key", "credentials")
HEALTH_TRANSACTIONS = ("/health", "/ready", "/metrics")


def configure_logging(
    service_name: str,
    log_level: int = logging.INFO,
    json_format: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """
    Configure stdlib logging and structlog together.

    Call once at startup, after init_sentry().

    Args:
        service_name: Name bound to the returned logger
        log_level: Minimum log level (default: INFO)
        json_format: JSON output (True) or console output (False).
                     None picks console in development and JSON elsewhere.

    Returns:
        Configured structlog logger
    """
    if json_format is None:
        environment = os.environ.get("PREVIEW_ENVIRONMENT", "development")
        json_format = environment != "development"

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
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.CallsiteParameterAdder(
            [
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
        add_sentry_context,
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


def add_sentry_context(
    _logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Turn structlog events into Sentry breadcrumbs and capture errors."""
    level = event_dict.get("level", "info")
    message = event_dict.get("event", "")

    standard_keys = {"event", "level", "timestamp", "logger", "filename", "lineno"}
    extra_data = {k: v for k, v in event_dict.items() if k not in standard_keys}

    sentry_sdk.add_breadcrumb(
        message=str(message),
        category="log",
        level=level,
        data=extra_data or None,
    )

    if method_name in ("error", "exception", "critical"):
        exc_info = event_dict.get("exc_info")
        if exc_info:
            sentry_sdk.capture_exception(exc_info[1] if isinstance(exc_info, tuple) else None)
        else:
            with sentry_sdk.isolation_scope() as scope:
                for key, value in extra_data.items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_message(
                    str(message),
                    level="error" if method_name == "error" else "fatal",
                )

    return event_dict


@dataclass
class SentryConfig:
    """Configuration for Sentry SDK initialization."""

    service_name: str
    dsn: str | None = None
    environment: str | None = None
    release: str | None = None
    traces_sample_rate: float | None = None
    profiles_sample_rate: float | None = None
    additional_integrations: list[Any] = field(default_factory=list)
    before_send: EventCallback | None = None


def _build_integrations(cfg: SentryConfig) -> list[Any]:
    integrations: list[Any] = [
        StarletteIntegration(transaction_style="endpoint"),
        FastApiIntegration(transaction_style="endpoint"),
        HttpxIntegration(),
        AsyncioIntegration(),
        LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
    ]
    integrations.extend(cfg.additional_integrations)
    return integrations


def scrub_query_string(query_string: str) -> str:
    """Replace the value of sensitive query parameters (e.g. ``token``)."""
    if not query_string:
        return query_string
    pairs = parse_qsl(query_string, keep_blank_values=True)
    scrubbed = [
        (key, "[Filtered]" if any(s in key.lower() for s in SENSITIVE_KEYS) else value)
        for key, value in pairs
    ]
    return urlencode(scrubbed)


def scrub_event(event: dict[str, Any]) -> dict[str, Any]:
    """Remove credentials from a Sentry event in place and return it."""
    request = event.get("request")
    if isinstance(request, dict):
        headers = request.get("headers")
        if isinstance(headers, dict):
            for key in list(headers.keys()):
                if key.lower() in SENSITIVE_HEADERS:
                    headers[key] = "[Filtered]"
        query_string = request.get("query_string")
        if isinstance(query_string, str):
            request["query_string"] = scrub_query_string(query_string)

    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in list(extra.keys()):
            if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
                extra[key] = "[Filtered]"

    return event


def init_sentry(
    service_name: str,
    config: SentryConfig | None = None,
) -> bool:
    """
    Initialize Sentry SDK for the preview gateway.

    Args:
        service_name: Name of the service (e.g., 'preview-gateway')
        config: Optional SentryConfig object with full configuration

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    cfg = config or SentryConfig(service_name=service_name)
    effective_dsn = cfg.dsn or os.environ.get("SENTRY_DSN")
    if not effective_dsn:
        return False

    effective_env = cfg.environment or os.environ.get("PREVIEW_ENVIRONMENT", "development")
    is_production = effective_env == "production"

    traces_rate = cfg.traces_sample_rate
    if traces_rate is None:
        traces_rate = DEFAULT_TRACES_SAMPLE_RATE if is_production else DEV_TRACES_SAMPLE_RATE
    profiles_rate = cfg.profiles_sample_rate
    if profiles_rate is None:
        profiles_rate = DEFAULT_PROFILES_SAMPLE_RATE if is_production else DEV_TRACES_SAMPLE_RATE

    def before_send(event: Event, hint: dict[str, Any]) -> Event | None:
        scrubbed = scrub_event(cast("dict[str, Any]", event))
        if cfg.before_send:
            return cast("Event | None", cfg.before_send(scrubbed, hint))
        return cast("Event", scrubbed)

    def before_send_transaction(event: Event, _hint: dict[str, Any]) -> Event | None:
        if event.get("transaction", "") in HEALTH_TRANSACTIONS:
            return None
        return event

    sentry_sdk.init(
        dsn=effective_dsn,
        environment=effective_env,
        release=cfg.release or f"{service_name}@{os.environ.get('VERSION', '0.1.0')}",
        traces_sample_rate=traces_rate,
        profiles_sample_rate=profiles_rate,
        integrations=_build_integrations(cfg),
        before_send=before_send,
        before_send_transaction=before_send_transaction,
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=100,
        server_name=service_name,
        ignore_errors=[
            "ConnectionRefusedError",
            "ConnectionResetError",
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
            "httpx.ConnectError",
            "httpx.ReadTimeout",
        ],
    )

    return True

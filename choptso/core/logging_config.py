"""
Structured logging configuration with structlog.

- All logs to STDOUT/STDERR for container log collection
- Structured JSON logging for production environments
- Human-readable console logs for development
- Third-party noise capped at WARNING (QUIET_LIBRARIES)
- Correlation IDs bound per request by the access log middleware

Background components (reconciler, typing tracker) log through the same
pipeline, so subscription lifecycle events carry the same app context as
HTTP access logs.
"""

import logging
import logging.config
import time
from typing import Any
import structlog
from structlog.types import EventDict, Processor
from choptso.config import settings

# Chatty at INFO; change streams and pool monitoring log per event
QUIET_LIBRARIES = ("pymongo", "motor", "redis", "httpx", "asyncio", "multipart")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add service name, version and environment to every log entry."""
    event_dict["service"] = "choptso-sync"
    event_dict["app"] = settings.APP_NAME
    event_dict["version"] = settings.APP_VERSION
    event_dict["environment"] = settings.ENVIRONMENT
    return event_dict


def add_severity_level(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add explicit severity level for log aggregation filtering."""
    if "level" in event_dict:
        event_dict["severity"] = event_dict["level"].upper()
    return event_dict


def add_trace_id_alias(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Expose correlation_id as trace_id for the observability stack."""
    if "correlation_id" in event_dict:
        event_dict["trace_id"] = event_dict["correlation_id"]
    elif "request_id" in event_dict:
        event_dict["trace_id"] = event_dict["request_id"]

    return event_dict


def censor_sensitive_data(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact sensitive values from logs.

    Any key containing password, token, api_key, secret or authorization is
    replaced with a fixed marker.
    """
    sensitive_keys = ["password", "token", "api_key", "secret", "authorization"]

    for key in list(event_dict.keys()):
        if any(sensitive in key.lower() for sensitive in sensitive_keys):
            event_dict[key] = "***REDACTED***"

    return event_dict


def _use_json() -> bool:
    return settings.ENVIRONMENT == "production" or settings.LOG_JSON_FORMAT


def setup_logging() -> None:
    """
    Configure structlog and the standard logging module.

    Development: colored console output.
    Production (or LOG_JSON_FORMAT=true): JSON to STDOUT.
    All environments: ERROR and CRITICAL also go to STDERR.
    """
    log_level_name = settings.LOG_LEVEL.upper()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_app_context,
        add_severity_level,
        add_trace_id_alias,
        censor_sensitive_data,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if _use_json():
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route third-party stdlib logging (pymongo, uvicorn, httpx) through structlog
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": renderer,
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "level": log_level_name,
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "structured",
            },
            "error": {
                "level": "ERROR",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
                "formatter": "structured",
            },
        },
        "loggers": {
            "": {
                "handlers": ["default", "error"],
                "level": log_level_name,
                "propagate": False,
            },
            "choptso": {
                "handlers": ["default", "error"],
                "level": log_level_name,
                "propagate": False,
            },
            "uvicorn": {
                "handlers": ["default"],
                "level": log_level_name,
                "propagate": False,
            },
            "uvicorn.error": {
                "handlers": ["default", "error"],
                "level": log_level_name,
                "propagate": False,
            },
            "uvicorn.access": {
                "handlers": [],  # AccessLogMiddleware replaces it
                "level": "CRITICAL",
                "propagate": False,
            },
            **{
                name: {"handlers": ["default"], "level": "WARNING", "propagate": False}
                for name in QUIET_LIBRARIES
            },
        },
    })

    logger = get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=log_level_name,
        environment=settings.ENVIRONMENT,
        format="json" if _use_json() else "console",
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("message_sent", message_id="m1", conversation_id="dm:a:b")
    """
    return structlog.get_logger(name)


class PerformanceLogger:
    """
    Context manager for performance timing and logging.

    Usage:
        with PerformanceLogger("initial_window_load", logger, conversation_id=cid):
            docs = await store.find(...)
    """

    def __init__(self, operation: str, logger: structlog.stdlib.BoundLogger, **context):
        self.operation = operation
        self.logger = logger
        self.context = context
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.debug(
                "operation_completed",
                operation=self.operation,
                duration_ms=round(duration_ms, 2),
                **self.context
            )
        else:
            # Failures here are retried by the caller
            self.logger.warning(
                "operation_failed",
                operation=self.operation,
                duration_ms=round(duration_ms, 2),
                error_type=exc_type.__name__,
                error=str(exc_val),
                **self.context
            )

        return False

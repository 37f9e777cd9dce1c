"""
Structured logging for the delegation engine.

Provides correlation IDs, context propagation, PII redaction and JSON output
for production observability. Every service operation runs inside a
LogOperation so started/completed/failed lines carry tenant and delegation ids.

Correlation ids are scoped: a CLI invocation, a health request or a bare
service call opens a correlation_scope, and everything logged inside it
(including nested service operations and the sweep's per-row work) shares
one id. Outside any scope, log lines carry no correlation id at all.
"""

import contextvars
import logging
import os
import secrets
import sys
import time
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

# Empty string means "no scope is active"
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


def generate_correlation_id() -> str:
    """Generate a new 22-character URL-safe correlation ID (128 bits of entropy)."""
    return secrets.token_urlsafe(16)


def current_correlation_id() -> str:
    """The id of the innermost active scope, or "" outside any scope."""
    return correlation_id_var.get()


def get_correlation_id() -> str:
    """The active correlation id, or a fresh one (not stored) when no scope is open."""
    return correlation_id_var.get() or generate_correlation_id()


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current context ("" clears it)."""
    correlation_id_var.set(correlation_id)


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """
    Run a block under one correlation id

    Without an explicit id the block inherits the enclosing scope's id, or
    starts a new one when there is none. The previous id is restored on exit.
    """
    cid = correlation_id or correlation_id_var.get() or generate_correlation_id()
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


def add_correlation_id(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add the scope's correlation ID to a log event, if a scope is active."""
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_event(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask PII keys on every event, not only on LogOperation context."""
    return redact_context(event_dict)


def configure_logging(
    *,
    json_output: bool = False,
    log_level: str = "INFO",
) -> None:
    """
    Configure structured logging for the application.

    Args:
        json_output: If True, output JSON logs (for production).
                    If False, output human-readable console logs (for development).
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper())

    # Logs go to stderr so CLI output on stdout stays machine-readable
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )

    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_correlation_id,
        redact_event,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger for the given module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)


def is_production() -> bool:
    """True when the ENVIRONMENT variable is 'production' (defaults to development)."""
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


# Request metadata and contact details are personal data; ids are not
REDACTED_FIELDS = {
    "ip_address",
    "user_agent",
    "email",
    "password",
    "token",
    "secret",
    "api_key",
    "private_key",
}


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """
    Redact sensitive fields from log context to prevent PII leakage.

    Example:
        >>> redact_context({"ip_address": "10.0.0.1", "operation": "approve"})
        {'ip_address': '***REDACTED***', 'operation': 'approve'}
    """
    return {
        k: "***REDACTED***" if k in REDACTED_FIELDS else v
        for k, v in context.items()
    }


class LogOperation:
    """
    Context manager for logging operations with automatic timing.

    The operation runs inside a correlation_scope; when it is the outermost
    scope, its started/completed/failed lines share a freshly minted id that
    is exposed as ``correlation_id``.
    """

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        operation: str,
        **context: Any,
    ):
        """
        Initialize operation logger.

        Args:
            logger: Structured logger instance
            operation: Operation name (e.g., "approve_delegation", "sweep_expired")
            **context: Additional context to include in logs
        """
        self.logger = logger
        self.operation = operation
        self.context = context
        self.correlation_id = ""
        self.start_time: float = 0.0
        self._scope: Any = None

    def __enter__(self) -> "LogOperation":
        self._scope = correlation_scope()
        self.correlation_id = self._scope.__enter__()
        self.start_time = time.perf_counter()
        self.logger.info(
            f"{self.operation} started",
            operation=self.operation,
            **self.context,
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        duration_ms = (time.perf_counter() - self.start_time) * 1000

        try:
            if exc_type is None:
                self.logger.info(
                    f"{self.operation} completed",
                    operation=self.operation,
                    duration_ms=round(duration_ms, 2),
                    **self.context,
                )
            else:
                # Stack traces only outside production
                self.logger.error(
                    f"{self.operation} failed",
                    operation=self.operation,
                    duration_ms=round(duration_ms, 2),
                    error_type=exc_type.__name__,
                    error=str(exc_val),
                    exc_info=not is_production(),
                    **self.context,
                )
        finally:
            self._scope.__exit__(None, None, None)

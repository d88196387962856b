"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation (ELK, Loki, CloudWatch)
- Request context propagation (request_id, trace_id, user_id)
- Stdlib `logger.info(..., extra={...})` calls rendered through the same chain
- Redaction of secrets, signatures and emails

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- ProcessorFormatter so library modules can keep using stdlib logging
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for request-scoped data
# These propagate across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

REDACTED = "***REDACTED***"

# Exact keys whose values are never logged
SENSITIVE_FIELDS = {
    "api_key",
    "password",
    "authorization",
    "secret",
    "webhook_secret",
    "signature",
    "stripe_signature",
    "token",
}

# Handler installed by configure_logging (replaced on reconfiguration)
_handler: logging.Handler | None = None


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add request context to log events.

    Injects:
    - request_id: Unique ID for each HTTP request
    - user_id: User the request acts on (if known)
    - trace_id: Distributed tracing ID (for multi-service correlation)
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    user_id = user_id_var.get()
    if user_id and "user_id" not in event_dict:
        event_dict["user_id"] = user_id

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO 8601 timestamp with microsecond precision.

    Format: 2025-01-15T10:30:45.123456Z
    """
    now = time.time()
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int((now % 1) * 1000000):06d}Z"
    )
    return event_dict


class ServiceMetadata:
    """
    Processor adding service metadata for log aggregation.

    Injects service, version and environment, which enables filtering like
    {service="minute-ledger", environment="production"}.
    """

    def __init__(self, service: str, version: str, environment: str):
        self.service = service
        self.version = version
        self.environment = environment

    def __call__(self, logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", self.service)
        event_dict.setdefault("version", self.version)
        event_dict.setdefault("environment", self.environment)
        return event_dict


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact sensitive fields to prevent credential and PII leakage.

    Redacted fields:
    - secrets, API keys, tokens, signatures: replaced with ***REDACTED***
      (any key containing "secret" counts)
    - email: replaced with domain only (user@example.com -> ***@example.com)
    """
    for key in list(event_dict.keys()):
        lowered = key.lower()
        if lowered in SENSITIVE_FIELDS or "secret" in lowered:
            if event_dict[key] is not None:
                event_dict[key] = REDACTED
            continue

        if lowered == "email" and isinstance(event_dict[key], str):
            email = event_dict[key]
            if "@" in email:
                domain = email.split("@")[1]
                event_dict[key] = f"***@{domain}"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add structured exception information.

    Extracts:
    - exception_type: Exception class name
    - exception_message: Exception message
    """
    exc_info = event_dict.get("exc_info")
    if exc_info is True:
        exc_info = sys.exc_info()
    if isinstance(exc_info, BaseException):
        exc_info = (type(exc_info), exc_info, exc_info.__traceback__)
    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, _ = exc_info
        if exc_type is not None:
            event_dict["exception_type"] = exc_type.__name__
            event_dict["exception_message"] = str(exc_value) if exc_value else ""

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
    service_name: str = "minute-ledger",
    service_version: str = "0.1.0",
    environment: str = "development",
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)
        service_name: Injected as "service"
        service_version: Injected as "version"
        environment: Injected as "environment"

    JSON output:
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Usage tracked",
          "service": "minute-ledger",
          "request_id": "req_abc123",
          "user_id": "user_42",
          "minutes_added": 2
        }
    """
    global _handler

    # Shared processors (run for structlog and stdlib records)
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        ServiceMetadata(service_name, service_version, environment),
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
        redact_sensitive_fields,
    ]

    if json_output:
        # Production: JSON output for log aggregation
        renderers: list[Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # Development: Human-readable console output
        renderers = [structlog.dev.ConsoleRenderer(colors=colorized)]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        # Stdlib records: lift extra={...} into the event dict first
        foreign_pre_chain=[structlog.stdlib.ExtraAdder(), *shared_processors],
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper()))
    _handler = handler


# ============================================================================
# LOGGER FACTORY
# ============================================================================


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        BoundLogger: Structured logger with request context

    Usage:
        logger = get_logger(__name__)
        logger.info("Upload completed", upload_id="u_1", minutes=2)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Automatically generates request_id and trace_id.

    Usage:
        with RequestContext(user_id="user_42"):
            logger.info("Processing request")  # request_id auto-injected
    """

    def __init__(
        self,
        user_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        """
        Initialize request context.

        Args:
            user_id: User the request acts on
            trace_id: Distributed trace ID (from X-Trace-ID header)
            request_id: Request ID (auto-generated if not provided)
        """
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.user_id = user_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        # Tokens for context cleanup
        self._request_id_token = None
        self._user_id_token = None
        self._trace_id_token = None

    def __enter__(self):
        """Set context variables."""
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set user_id (even if None) so a later set_user_id() cannot leak across requests
        self._user_id_token = user_id_var.set(self.user_id)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Reset context variables."""
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._user_id_token is not None:
            user_id_var.reset(self._user_id_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_user_id(user_id: str) -> None:
    """Set user ID for current context."""
    user_id_var.set(user_id)


def get_request_id() -> str | None:
    """Get request ID from current context."""
    return request_id_var.get()


def get_user_id() -> str | None:
    """Get user ID from current context."""
    return user_id_var.get()


def get_trace_id() -> str | None:
    """Get trace ID from current context."""
    return trace_id_var.get()

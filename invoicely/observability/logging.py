"""
Structured logging for the billing service.

structlog renders every record, including records from modules that log
through the standard library with ``extra={...}``, so one pipeline applies
request context, service metadata and redaction everywhere.

Output:
- JSON lines in production (LOGGING_JSON_OUTPUT=true)
- Human-readable console lines in development

Request-scoped fields (request_id, user_id, trace_id) live in context
variables and follow the request across awaits.
"""

import logging
import sys
import time
import uuid
from collections.abc import Mapping
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, Processor

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

_CONTEXT_FIELDS: dict[str, ContextVar[str | None]] = {
    "request_id": request_id_var,
    "user_id": user_id_var,
    "trace_id": trace_id_var,
}

# Any key containing one of these markers is masked
SENSITIVE_KEY_MARKERS = (
    "password",
    "token",
    "secret",
    "authorization",
    "api_key",
    "service_role_key",
)

# Marks the handler installed by configure_logging so reconfiguring replaces it
_HANDLER_NAME = "invoicely-structlog"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def new_trace_id() -> str:
    return f"trace_{uuid.uuid4().hex[:16]}"


# ============================================================================
# PROCESSORS
# ============================================================================


def add_request_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Copy request_id, user_id and trace_id from the current context."""
    for key, var in _CONTEXT_FIELDS.items():
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def service_metadata_processor(service: str, version: str, environment: str) -> Processor:
    """Build a processor stamping service, version and environment on each event."""
    metadata = {"service": service, "version": version, "environment": environment}

    def add_service_metadata(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in metadata.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_metadata


def _mask(value: str) -> str:
    if len(value) > 16:
        return f"{value[:6]}***{value[-3:]}"
    return "***REDACTED***"


def _redact(mapping: Mapping[str, Any]) -> dict[str, Any]:
    redacted: dict[str, Any] = {}
    for key, value in mapping.items():
        lowered = str(key).lower()
        if any(marker in lowered for marker in SENSITIVE_KEY_MARKERS):
            redacted[key] = _mask(value) if isinstance(value, str) else value
        elif lowered == "email" and isinstance(value, str) and "@" in value:
            redacted[key] = f"***@{value.split('@', 1)[1]}"
        elif isinstance(value, Mapping):
            redacted[key] = _redact(value)
        else:
            redacted[key] = value
    return redacted


def redact_sensitive_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Mask credentials and emails, including inside nested dicts (error details).

    - keys naming a token, secret, password or authorization: long values keep
      a short prefix and suffix, short values are fully masked
    - email: domain only (user@example.com → ***@example.com)
    """
    event_dict.update(_redact(event_dict))
    return event_dict


def add_exception_info(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add exception_type / exception_message for error aggregation."""
    exc_info = event_dict.get("exc_info")
    if exc_info is True:
        exc_info = sys.exc_info()
    if isinstance(exc_info, BaseException):
        exc_info = (type(exc_info), exc_info, exc_info.__traceback__)

    if isinstance(exc_info, tuple) and len(exc_info) == 3 and exc_info[0] is not None:
        event_dict["exception_type"] = exc_info[0].__name__
        event_dict["exception_message"] = str(exc_info[1])
    return event_dict


# ============================================================================
# CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
    service_name: str = "invoicely-billing",
    service_version: str = "0.1.0",
    environment: str = "development",
) -> None:
    """
    Configure structlog and route the standard library's records through it.

    Example JSON line:
        {"event": "Checkout session created", "level": "info",
         "logger": "invoicely.billing.checkout", "user_id": "5d0c...",
         "product_id": "prod_pro", "service": "invoicely-billing",
         "environment": "production", "request_id": "req_abc123",
         "timestamp": "2026-01-15T10:30:45.123456Z"}
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        service_metadata_processor(service_name, service_version, environment),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        redact_sensitive_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=colorized)
    )

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level.upper())


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger.

    Usage:
        logger = get_logger(__name__)
        logger.info("Webhook processed", event_type="subscription.updated")
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT
# ============================================================================


class RequestContext:
    """
    Bind request_id, user_id and trace_id for the duration of a block.

    Missing ids are generated. Values set inside the block (set_user_id)
    are undone on exit, so nested and concurrent requests never leak.
    """

    def __init__(
        self,
        user_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or new_request_id()
        self.user_id = user_id
        self.trace_id = trace_id or new_trace_id()
        self._tokens: list[tuple[ContextVar, Any]] = []

    def __enter__(self):
        # user_id is always set (even to None) so set_user_id() inside is undone
        values = {"request_id": self.request_id, "user_id": self.user_id, "trace_id": self.trace_id}
        for key, value in values.items():
            var = _CONTEXT_FIELDS[key]
            self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


class OperationContext:
    """
    Time a unit of work and log its outcome.

    Results known only at the end can be attached with record():

        with OperationContext("gmail_watch_renewal") as op:
            result = await renewer.renew_all()
            op.record(renewed=result.renewed, failed=result.failed)
    """

    def __init__(self, operation: str, **fields: Any):
        self.operation = operation
        self.fields = dict(fields)
        self.logger = get_logger(f"operation.{operation}")
        self.start_time: float | None = None

    def record(self, **fields: Any) -> None:
        self.fields.update(fields)

    @property
    def elapsed_ms(self) -> float:
        if self.start_time is None:
            return 0.0
        return round((time.perf_counter() - self.start_time) * 1000, 2)

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.logger.info(
                f"{self.operation} completed", latency_ms=self.elapsed_ms, **self.fields
            )
        else:
            self.logger.error(
                f"{self.operation} failed",
                latency_ms=self.elapsed_ms,
                exc_info=(exc_type, exc_val, exc_tb),
                **self.fields,
            )


def set_user_id(user_id: str) -> None:
    """Attach the authenticated user to the current request context."""
    user_id_var.set(user_id)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_user_id() -> str | None:
    return user_id_var.get()


def get_trace_id() -> str | None:
    return trace_id_var.get()

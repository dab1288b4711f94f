"""
Structured logging for the RBAC Policy Service.

Every record is JSON and carries, when known:
- correlation_id: from the X-Correlation-ID header or generated per request
- subject_id / tenant_id / client_id: the policy check being served
- trace_id / span_id: the active OpenTelemetry span
"""

import sys
import uuid
import logging
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

import structlog
from opentelemetry import trace

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
subject_id_var: ContextVar[Optional[str]] = ContextVar("subject_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)
client_id_var: ContextVar[Optional[str]] = ContextVar("client_id", default=None)

_POLICY_CONTEXT = (
    ("subject_id", subject_id_var),
    ("tenant_id", tenant_id_var),
    ("client_id", client_id_var),
)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structlog JSON output on stdout."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            # Audit records carry their own "timestamp" field
            structlog.processors.TimeStamper(fmt="iso", key="logged_at"),
            structlog.processors.format_exc_info,
            service_stamper(service_name),
            add_trace_context,
            add_policy_context,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def service_stamper(service_name: str) -> Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]:
    def stamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict
    return stamp


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the active span's ids."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_policy_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add correlation and check context; explicit event fields win."""
    correlation_id = correlation_id_var.get()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)

    for key, var in _POLICY_CONTEXT:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def bind_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one when absent or empty."""
    if not correlation_id:
        correlation_id = str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def bind_check_context(subject_id: Optional[str] = None,
                       tenant_id: Optional[str] = None,
                       client_id: Optional[str] = None) -> None:
    subject_id_var.set(subject_id or None)
    tenant_id_var.set(tenant_id or None)
    client_id_var.set(client_id or None)


def clear_context() -> None:
    correlation_id_var.set(None)
    for _, var in _POLICY_CONTEXT:
        var.set(None)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)

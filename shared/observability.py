"""
Observability facade: logging, metrics, and tracing behind one handle.
"""

from typing import Optional

from .logging import bind_check_context, bind_correlation_id, configure_logging, get_logger
from .metrics import MetricsCollector, get_metrics_collector
from .tracing import add_span_attributes, add_span_event


class ObservabilityManager:
    """Centralized observability manager for services."""

    def __init__(self, service_name: str, log_level: str = "info",
                 metrics: Optional[MetricsCollector] = None):
        self.service_name = service_name
        self.log_level = log_level

        configure_logging(service_name, log_level)
        self.metrics = metrics or get_metrics_collector(service_name)
        self.logger = get_logger(f"{service_name}.observability")

    def trace_check(self, correlation_id: Optional[str] = None,
                    subject_id: Optional[str] = None,
                    tenant_id: Optional[str] = None,
                    client_id: Optional[str] = None) -> str:
        """Bind a policy check's context for logs and the active span."""
        correlation_id = bind_correlation_id(correlation_id)
        bind_check_context(subject_id, tenant_id, client_id)

        add_span_attributes(
            correlation_id=correlation_id,
            subject_id=subject_id,
            tenant_id=tenant_id,
            client_id=client_id
        )
        return correlation_id

    def log_business_event(self, event_type: str, **kwargs):
        """Log business event with full context."""
        self.logger.info(
            "Business event",
            event_type=event_type,
            **kwargs
        )
        self.metrics.record_business_event(event_type)
        add_span_event("business_event", event_type=event_type)


def get_observability_manager(service_name: str, **kwargs) -> ObservabilityManager:
    """Get an observability manager for a service."""
    return ObservabilityManager(service_name, **kwargs)

"""
Observability bundle for the optical offers platform.
Integrates logging, metrics, and tracing.
"""

from typing import Optional

from .logging import configure_logging, get_logger, request_id_var, set_request_id, set_pricing_context, clear_context
from .metrics import get_metrics_collector
from .tracing import configure_tracing, add_span_attributes, add_span_event, trace_operation


class ObservabilityManager:
    """Centralized observability manager for services."""

    def __init__(self, service_name: str, log_level: str = "info",
                 otel_exporter: Optional[str] = None, enable_console: bool = False):
        self.service_name = service_name
        self.log_level = log_level
        self.otel_exporter = otel_exporter
        self.enable_console = enable_console

        self._setup_logging()
        self._setup_tracing()
        self._setup_metrics()

        self.logger = get_logger(f"{service_name}.observability")

        self.logger.info("Observability initialized",
                         service=service_name,
                         log_level=log_level,
                         tracing_enabled=bool(otel_exporter))

    def _setup_logging(self):
        """Set up structured logging."""
        configure_logging(self.service_name, self.log_level)

    def _setup_tracing(self):
        """Set up distributed tracing."""
        if self.otel_exporter or self.enable_console:
            configure_tracing(
                self.service_name,
                self.otel_exporter,
                self.enable_console
            )

    def _setup_metrics(self):
        """Set up metrics collection."""
        self.metrics = get_metrics_collector(self.service_name)

    def trace_request(self, request_id: Optional[str] = None,
                      organization_id: Optional[str] = None,
                      store_id: Optional[str] = None):
        """Set up request context for tracing."""
        request_id = set_request_id(request_id or request_id_var.get())
        set_pricing_context(organization_id, store_id)

        add_span_attributes(
            request_id=request_id,
            organization_id=organization_id,
            store_id=store_id
        )
        return request_id

    def clear_request_context(self):
        """Clear request context."""
        clear_context()

    def log_error(self, error_type: str, error_message: str, **kwargs):
        """Log error with full context."""
        self.logger.error(
            "Error occurred",
            error_type=error_type,
            error_message=error_message,
            **kwargs
        )
        self.metrics.record_error(error_type)
        add_span_event("error",
                       error_type=error_type,
                       error_message=error_message)

    def log_business_event(self, event_type: str, **kwargs):
        """Log business event with full context."""
        self.logger.info(
            "Business event",
            event_type=event_type,
            **kwargs
        )
        self.metrics.record_business_event(event_type)
        add_span_event("business_event", event_type=event_type, **kwargs)

    def trace_operation(self, operation_name: str, **attributes):
        """Open a span for a named operation."""
        return trace_operation(f"{self.service_name}.{operation_name}", **attributes)


def get_observability_manager(service_name: str, **kwargs) -> ObservabilityManager:
    """Get an observability manager for a service."""
    return ObservabilityManager(service_name, **kwargs)

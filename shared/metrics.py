"""
Shared metrics configuration for the optical offers platform.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional
import threading


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        # Business metrics
        self._metrics["business_events_total"] = Counter(
            "business_events_total",
            "Total business events",
            ["event_type", "service"],
            registry=self.registry
        )

        if self.service_name == "offers":
            self._setup_offers_metrics()

    def _setup_offers_metrics(self):
        """Set up offers-specific metrics."""
        self._metrics["offer_calculations_total"] = Counter(
            "offer_calculations_total",
            "Total offer calculations",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["offer_calculation_duration_seconds"] = Histogram(
            "offer_calculation_duration_seconds",
            "Offer calculation duration in seconds",
            ["operation"],
            registry=self.registry
        )

        self._metrics["coupon_commits_total"] = Counter(
            "coupon_commits_total",
            "Total coupon commit attempts",
            ["status"],
            registry=self.registry
        )

        self._metrics["snapshot_cache_lookups_total"] = Counter(
            "snapshot_cache_lookups_total",
            "Rule snapshot cache lookups",
            ["layer", "result"],
            registry=self.registry
        )

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        """Record business event metrics."""
        service_name = service or self.service_name
        self._metrics["business_events_total"].labels(event_type=event_type, service=service_name).inc()

    def record_calculation(self, outcome: str, duration: float, operation: str = "calculate"):
        """Record a finished offer calculation."""
        self.increment_counter("offer_calculations_total", outcome=outcome)
        self.observe_histogram("offer_calculation_duration_seconds", duration, operation=operation)

    def record_coupon_commit(self, status: str):
        """Record a coupon commit outcome."""
        self.increment_counter("coupon_commits_total", status=status)

    def record_snapshot_lookup(self, layer: str, hit: bool):
        """Record a rule snapshot cache lookup."""
        self.increment_counter(
            "snapshot_cache_lookups_total",
            layer=layer,
            result="hit" if hit else "miss"
        )

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)


_collectors: Dict[str, MetricsCollector] = {}
_collectors_lock = threading.Lock()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service.

    Collectors bound to the default registry are shared per service name,
    since prometheus_client refuses to register the same metric twice.
    """
    if registry is not None:
        return MetricsCollector(service_name, registry)

    with _collectors_lock:
        collector = _collectors.get(service_name)
        if collector is None:
            collector = MetricsCollector(service_name)
            _collectors[service_name] = collector
        return collector


from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

# =====================================
# METRICS COLLECTOR
# =====================================

class MetricsCollector:
    """Prometheus metrics collector for the billing core"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        registry = registry if registry is not None else REGISTRY
        self.registry = registry

        self.webhooks_total = Counter(
            "billing_webhooks_total",
            "Provider callbacks received, by outcome",
            ["provider", "outcome"],  # outcome=completed|already_processed|failed|rejected|not_found|error
            registry=registry,
        )

        self.payments_total = Counter(
            "billing_payments_total",
            "Payments written, by resulting status",
            ["status"],
            registry=registry,
        )

        self.invoice_transitions_total = Counter(
            "billing_invoice_transitions_total",
            "Invoice status transitions",
            ["status"],
            registry=registry,
        )

        self.provider_calls_total = Counter(
            "billing_provider_calls_total",
            "Outbound provider API calls",
            ["provider", "operation", "outcome"],
            registry=registry,
        )

        self.provider_call_duration = Histogram(
            "billing_provider_call_duration_seconds",
            "Outbound provider API call duration",
            ["provider", "operation"],
            registry=registry,
        )

    def record_webhook(self, provider: str, outcome: str):
        self.webhooks_total.labels(provider=provider, outcome=outcome).inc()

    def record_payment(self, status: str):
        self.payments_total.labels(status=status).inc()

    def record_invoice_transition(self, status: str):
        self.invoice_transitions_total.labels(status=status).inc()

    def record_provider_call(self, provider: str, operation: str, outcome: str, duration: float):
        """Record one outbound provider call"""
        self.provider_calls_total.labels(
            provider=provider,
            operation=operation,
            outcome=outcome,
        ).inc()
        self.provider_call_duration.labels(provider=provider, operation=operation).observe(duration)


# Global metrics instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Dependency to get metrics collector"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector

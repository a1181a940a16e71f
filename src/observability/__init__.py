"""
Observability: OpenTelemetry tracing + Prometheus metrics.

Usage:
    from src.observability import setup_observability, metrics, tracer

    setup_observability(app)

    with tracer.start_as_current_span("my_operation"):
        ...

    metrics.provider_requests_total.labels(provider="claude", outcome="success").inc()
"""

from src.observability.setup import setup_observability
from src.observability.metrics import metrics
from src.observability.tracing import tracer

__all__ = ["setup_observability", "metrics", "tracer"]

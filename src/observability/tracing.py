"""
OpenTelemetry tracing setup.

Global tracer for application code:
    from src.observability import tracer
    with tracer.start_as_current_span("research.stage"):
        ...

Console export is enabled only with ROUTER_TRACE_CONSOLE=1.
"""

import os

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.resources import Resource

SERVICE_NAME = "research-router"
SERVICE_VERSION = "0.1.0"

_resource = Resource.create({"service.name": SERVICE_NAME, "service.version": SERVICE_VERSION})

_provider = TracerProvider(resource=_resource)

if os.getenv("ROUTER_TRACE_CONSOLE", "0") == "1":
    _provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

trace.set_tracer_provider(_provider)

tracer = trace.get_tracer(SERVICE_NAME, SERVICE_VERSION)

"""OpenTelemetry spans around pipeline stages.

Until `init_tracing` is given an endpoint the API's no-op provider stays in
place and `traced` spans are discarded.
"""

from __future__ import annotations

import functools
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "upscale-batch"

_provider: Optional[TracerProvider] = None


def init_tracing(endpoint: Optional[str]) -> bool:
    """Export spans to an OTLP/HTTP endpoint such as http://localhost:4318/v1/traces."""
    global _provider
    if _provider is not None:
        return True
    if not endpoint:
        return False

    resource = Resource.create({"service.name": SERVICE_NAME})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _provider = provider
    return True


def shutdown_tracing() -> None:
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def traced(func):
    """Wrap a function call in a span named after the function."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(func.__name__):
            return func(*args, **kwargs)

    return wrapper

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

logger = logging.getLogger("rolu_rewards_api.tracing")

_TRUTHY = {"1", "true", "yes", "on"}
_provider_installed = False


def tracing_enabled() -> bool:
    if os.getenv("ROLU_OTEL_ENABLED", "").strip().lower() in _TRUTHY:
        return True
    return bool(os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"))


def configure_tracing(*, service_name: str = "rolu-rewards-api") -> bool:
    """Install the global tracer provider once; request and settlement spans use it.

    Returns whether tracing is active. Both the API process and the batch script call this.
    """
    global _provider_installed
    if not tracing_enabled():
        return False
    if _provider_installed:
        return True

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": os.getenv("OTEL_SERVICE_NAME", service_name)}
        ),
        sampler=ParentBased(TraceIdRatioBased(float(os.getenv("OTEL_TRACES_SAMPLER_ARG", "1.0")))),
    )
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else ConsoleSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _provider_installed = True
    logger.info(
        "tracing_configured",
        extra={"service_name": service_name, "exporter": "otlp" if endpoint else "console"},
    )
    return True

from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from salesdesk.core.config import get_settings

try:
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
except Exception:  # pragma: no cover - runtime environment fallback
    OTLPSpanExporter = None  # type: ignore[assignment]


_configured = False
_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str | None = None) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    settings = get_settings()
    resource = Resource.create(
        {
            "service.name": service_name or settings.otel_service_name,
            "service.namespace": "salesdesk",
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
            "deployment.environment": settings.app_env,
        }
    )
    _provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str | None = None) -> TracerProvider | None:
    """Install the tracer provider and the exporters named in settings.

    Lead intake, duplicate review and merge spans are emitted through the
    global provider, so nothing else needs wiring.
    """

    global _configured

    settings = get_settings()
    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider(service_name)
    if _configured:
        return provider

    if settings.otel_exporter_otlp_endpoint and OTLPSpanExporter is not None:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel(service_name: str | None = None) -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8", errors="replace"))
        request_id_raw = headers.get(b"x-request-id")
        if request_id_raw:
            span.set_attribute("request_id", request_id_raw.decode("utf-8", errors="replace"))

    return server_request_hook

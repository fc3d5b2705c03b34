from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.core.config import Settings


SERVICE_NAME = "fieldbook-api"
_CRM_PATH_PREFIXES = ("/api/crm/custom-fields/", "/api/crm/records/")

_provider: TracerProvider | None = None
_exporters_installed = False


def _tracer_provider(service_name: str, environment: str = "local") -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.namespace": "crm",
                "deployment.environment": environment,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings) -> TracerProvider | None:
    """Install the SDK provider and the exporters enabled in settings, once per process."""
    global _exporters_installed

    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(SERVICE_NAME, settings.app_env)
    if _exporters_installed:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def crm_module_from_path(path: str) -> str | None:
    for prefix in _CRM_PATH_PREFIXES:
        if path.startswith(prefix):
            segment = path[len(prefix):].split("/", 1)[0]
            return segment or None
    return None


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
        module = crm_module_from_path(scope.get("path", ""))
        if module and module != "definitions":
            span.set_attribute("crm.module", module)

    return server_request_hook

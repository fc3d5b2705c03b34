from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app import events
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")

_custom_field_event_types = [
    "crm.custom_field.created",
    "crm.custom_field.updated",
    "crm.custom_field.deleted",
    "crm.field_order.updated",
    "crm.custom_field_values.updated",
]


def _on_custom_field_event(envelope: dict[str, Any]) -> None:
    logger.info(
        "crm_event",
        extra={
            "operation": envelope.get("event_type"),
            "crm_module": envelope.get("module"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    for event_type in _custom_field_event_types:
        events.subscribe(event_type, _on_custom_field_event)
    logger.info("system_started", extra={"operation": "startup"})
    yield
    events.clear_subscribers()


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from salesdesk.api.routes import router as api_router
from salesdesk.core.config import get_settings
from salesdesk.core.context import RequestContextMiddleware
from salesdesk.core.events import InternalEvent, event_bus
from salesdesk.logging import configure_logging
from salesdesk.middleware.correlation_id import CorrelationIdMiddleware
from salesdesk.middleware.request_logging import RequestLoggingMiddleware
from salesdesk.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("salesdesk.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


def _on_lead_locked(event: InternalEvent) -> None:
    # Reviewer notification delivery lives outside this service; record the hand-off.
    payload = event.payload.get("payload", {})
    logger.info("lead.review_requested", extra={"event_type": event.name, "lead_id": payload.get("lead_id")})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe("crm.lead.locked", _on_lead_locked)
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())

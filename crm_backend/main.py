from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_backend import events
from crm_backend.api.routes import router as api_router
from crm_backend.core.config import get_settings
from crm_backend.core.errors import CRMError
from crm_backend.crm.api import crm_error_handler, request_validation_handler
from crm_backend.logging import configure_logging
from crm_backend.middleware.correlation_id import CorrelationIdMiddleware
from crm_backend.middleware.request_logging import RequestLoggingMiddleware
from crm_backend.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crm_backend.lifecycle")


def _on_system_started(envelope: dict[str, Any]) -> None:
    logger.info("system_event", extra={"event_name": envelope.get("event_type")})


@asynccontextmanager
async def lifespan(app: FastAPI):
    events.subscribe("system.started", _on_system_started)
    events.publish({"event_type": "system.started", "version": 1, "payload": {"service": "crm-api"}})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(CRMError, crm_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("crm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())

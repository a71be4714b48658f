from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.automation.triggers import ENTITY_EVENT_NAMES, WorkflowTriggerService
from app.context import reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import InMemoryRateLimitStore, MutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.webhooks.service import WebhookService


configure_logging()
logger = logging.getLogger("app.lifecycle")
workflow_trigger_service = WorkflowTriggerService()
webhook_service = WebhookService()
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _event_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


@contextmanager
def _event_correlation(envelope: dict[str, Any]):
    correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None
    token = set_correlation_id(correlation_id)
    try:
        yield
    finally:
        reset_correlation_id(token)


def _on_entity_event_for_workflows(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    try:
        with _event_correlation(event.payload), _event_session_scope() as session:
            workflow_trigger_service.handle_entity_event(session, event.payload)
    except Exception as exc:
        logger.exception("workflow_trigger_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


def _on_entity_event_for_webhooks(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    try:
        with _event_correlation(event.payload), _event_session_scope() as session:
            webhook_service.handle_entity_event(session, event.payload)
    except Exception as exc:
        logger.exception("webhook_fanout_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


def register_subscriptions() -> None:
    global _subscriptions_registered
    if _subscriptions_registered:
        return
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe_many(ENTITY_EVENT_NAMES, _on_entity_event_for_workflows)
    event_bus.subscribe_many(ENTITY_EVENT_NAMES, _on_entity_event_for_webhooks)
    _subscriptions_registered = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    register_subscriptions()
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()
rate_limit_store = InMemoryRateLimitStore(idle_ttl_seconds=settings.rate_limit_idle_ttl_seconds)

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware, store=rate_limit_store)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("relay-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any

import httpx
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from app import events
from app.context import get_correlation_id, reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.metrics import observe_webhook_attempt
from app.otel import get_tracer
from app.webhooks.models import Webhook, WebhookDelivery, utcnow
from app.webhooks.signing import EVENT_HEADER, RETRY_HEADER, SIGNATURE_HEADER, canonical_json, sign


logger = logging.getLogger("app.webhooks.delivery")
tracer = get_tracer("app.webhooks.delivery")


def is_deliverable(webhook: Webhook | None) -> bool:
    return webhook is not None and webhook.is_active and webhook.deleted_at is None


def next_retry_at(attempts: int, now: datetime, max_attempts: int) -> datetime | None:
    if attempts >= max_attempts:
        return None
    return now + timedelta(minutes=2**attempts)


class WebhookDispatcher:
    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self.transport = transport

    def dispatch(
        self,
        session: Session,
        webhook: Webhook,
        event_name: str,
        payload: dict[str, Any],
    ) -> WebhookDelivery | None:
        if not is_deliverable(webhook):
            return None
        delivery = self.create_pending(session, webhook, event_name, payload)
        return self.attempt(session, delivery, webhook)

    def create_pending(
        self,
        session: Session,
        webhook: Webhook,
        event_name: str,
        payload: dict[str, Any],
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            webhook_id=webhook.id,
            event=event_name,
            payload=canonical_json(payload),
            status="pending",
            attempts=0,
            claimed_at=utcnow(),
            correlation_id=get_correlation_id(),
        )
        session.add(delivery)
        session.commit()
        return delivery

    def attempt(self, session: Session, delivery: WebhookDelivery, webhook: Webhook) -> WebhookDelivery:
        """Performs one HTTP attempt for a delivery the caller has already claimed as pending."""
        settings = get_settings()
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign(webhook.secret, delivery.payload),
            EVENT_HEADER: delivery.event,
            RETRY_HEADER: str(delivery.attempts),
        }

        token = set_correlation_id(delivery.correlation_id or get_correlation_id())
        started = time.perf_counter()
        response: httpx.Response | None = None
        error: str | None = None
        try:
            with tracer.start_as_current_span("webhooks.delivery.attempt") as span:
                span.set_attribute("webhook_id", str(webhook.id))
                span.set_attribute("delivery_id", str(delivery.id))
                span.set_attribute("event_name", delivery.event)
                span.set_attribute("attempts", delivery.attempts)
                if delivery.correlation_id:
                    span.set_attribute("correlation_id", delivery.correlation_id)
                try:
                    with httpx.Client(timeout=settings.webhook_timeout_seconds, transport=self.transport) as client:
                        response = client.post(webhook.url, content=delivery.payload.encode("utf-8"), headers=headers)
                except httpx.HTTPError as exc:
                    error = f"{type(exc).__name__}: {exc}"
                    span.record_exception(exc)

                if response is not None:
                    span.set_attribute("http.status_code", response.status_code)
                succeeded = response is not None and response.is_success
                if not succeeded:
                    span.set_status(Status(StatusCode.ERROR, error or f"HTTP {response.status_code}"))

            self._record_outcome(session, delivery, response, error, succeeded, settings.webhook_max_attempts)
            duration = time.perf_counter() - started
            observe_webhook_attempt("success" if succeeded else "failed", duration)
            logger.info(
                "webhook.delivery.attempted",
                extra={
                    "webhook_id": str(webhook.id),
                    "delivery_id": str(delivery.id),
                    "event_name": delivery.event,
                    "status": delivery.status,
                    "status_code": delivery.status_code,
                    "attempts": delivery.attempts,
                    "duration_ms": round(duration * 1000, 2),
                    "error": delivery.error_message,
                },
            )
            events.publish(
                {
                    "event_type": f"webhooks.delivery.{delivery.status}",
                    "webhook_id": str(webhook.id),
                    "delivery_id": str(delivery.id),
                    "event": delivery.event,
                    "attempts": delivery.attempts,
                    "status_code": delivery.status_code,
                    "correlation_id": delivery.correlation_id,
                }
            )
        finally:
            reset_correlation_id(token)
        return delivery

    def _record_outcome(
        self,
        session: Session,
        delivery: WebhookDelivery,
        response: httpx.Response | None,
        error: str | None,
        succeeded: bool,
        max_attempts: int,
    ) -> None:
        body_limit = get_settings().webhook_response_body_limit
        now = utcnow()
        delivery.attempts = delivery.attempts + 1
        delivery.claimed_at = None
        delivery.status_code = response.status_code if response is not None else None
        delivery.response_body = response.text[:body_limit] if response is not None else None

        if succeeded:
            delivery.status = "success"
            delivery.error_message = None
            delivery.next_retry_at = None
        else:
            delivery.status = "failed"
            delivery.error_message = (error or f"HTTP {delivery.status_code}")[:2000]
            delivery.next_retry_at = next_retry_at(delivery.attempts, now, max_attempts)
        session.add(delivery)
        session.commit()

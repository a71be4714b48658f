from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from app import audit
from app.api.deps import ActorUser
from app.core.config import get_settings
from app.webhooks.dispatcher import WebhookDispatcher
from app.webhooks.models import Webhook, WebhookDelivery, utcnow
from app.webhooks.retry import WebhookRetryScheduler
from app.webhooks.schemas import (
    WebhookCreate,
    WebhookDeliveryRead,
    WebhookRead,
    WebhookSecretRead,
    WebhookTestRead,
    WebhookUpdate,
)
from app.webhooks.signing import generate_secret


logger = logging.getLogger("app.webhooks.delivery")

TEST_EVENT = "test"


class WebhookService:
    def __init__(
        self,
        dispatcher: WebhookDispatcher | None = None,
        retry_scheduler: WebhookRetryScheduler | None = None,
    ) -> None:
        self.dispatcher = dispatcher or WebhookDispatcher()
        self.retry_scheduler = retry_scheduler or WebhookRetryScheduler(self.dispatcher)

    def list_webhooks(
        self,
        session: Session,
        *,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookRead]:
        stmt: Select[tuple[Webhook]] = select(Webhook).where(Webhook.deleted_at.is_(None))
        if is_active is not None:
            stmt = stmt.where(Webhook.is_active.is_(is_active))
        rows = session.scalars(stmt.order_by(Webhook.created_at.desc()).limit(limit).offset(offset)).all()
        return [WebhookRead.model_validate(row) for row in rows]

    def get_webhook(self, session: Session, webhook_id: uuid.UUID) -> WebhookRead:
        return WebhookRead.model_validate(self._load_webhook(session, webhook_id))

    def create_webhook(self, session: Session, dto: WebhookCreate, actor_user: ActorUser) -> WebhookSecretRead:
        webhook = Webhook(
            name=dto.name.strip(),
            url=dto.url,
            secret=generate_secret(),
            events=dto.events,
            is_active=dto.is_active,
            created_by=actor_user.user_id,
        )
        session.add(webhook)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.webhook",
            entity_id=str(webhook.id),
            action="webhook.created",
            before=None,
            after=WebhookRead.model_validate(webhook).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(webhook)
        return WebhookSecretRead.model_validate(webhook)

    def update_webhook(
        self,
        session: Session,
        webhook_id: uuid.UUID,
        dto: WebhookUpdate,
        actor_user: ActorUser,
    ) -> WebhookRead:
        webhook = self._load_webhook(session, webhook_id)
        before = WebhookRead.model_validate(webhook).model_dump(mode="json")

        payload = dto.model_dump(exclude_unset=True)
        for key in ["name", "url", "events", "is_active"]:
            if key in payload and payload[key] is not None:
                setattr(webhook, key, payload[key])
        webhook.updated_at = utcnow()
        session.add(webhook)
        session.flush()

        after = WebhookRead.model_validate(webhook).model_dump(mode="json")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.webhook",
            entity_id=str(webhook.id),
            action="webhook.updated",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(webhook)
        return WebhookRead.model_validate(webhook)

    def soft_delete_webhook(self, session: Session, webhook_id: uuid.UUID, actor_user: ActorUser) -> None:
        webhook = self._load_webhook(session, webhook_id)
        before = WebhookRead.model_validate(webhook).model_dump(mode="json")

        webhook.deleted_at = utcnow()
        webhook.is_active = False
        webhook.updated_at = utcnow()
        session.add(webhook)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.webhook",
            entity_id=str(webhook.id),
            action="webhook.deleted",
            before=before,
            after={"deleted_at": webhook.deleted_at.isoformat()},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def rotate_secret(self, session: Session, webhook_id: uuid.UUID, actor_user: ActorUser) -> WebhookSecretRead:
        webhook = self._load_webhook(session, webhook_id)
        webhook.secret = generate_secret()
        webhook.updated_at = utcnow()
        session.add(webhook)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.webhook",
            entity_id=str(webhook.id),
            action="webhook.secret_rotated",
            before=None,
            after={"rotated_at": webhook.updated_at.isoformat()},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(webhook)
        return WebhookSecretRead.model_validate(webhook)

    def list_deliveries(
        self,
        session: Session,
        webhook_id: uuid.UUID,
        *,
        delivery_status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookDeliveryRead]:
        self._load_webhook(session, webhook_id, include_deleted=True)
        stmt = select(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook_id)
        if delivery_status:
            stmt = stmt.where(WebhookDelivery.status == delivery_status)
        rows = session.scalars(stmt.order_by(WebhookDelivery.created_at.desc()).limit(limit).offset(offset)).all()
        return [WebhookDeliveryRead.model_validate(row) for row in rows]

    def retry_delivery(self, session: Session, delivery_id: uuid.UUID, actor_user: ActorUser) -> WebhookDeliveryRead:
        settings = get_settings()
        delivery = session.get(WebhookDelivery, delivery_id)
        if delivery is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook delivery not found")
        webhook = self._load_webhook(session, delivery.webhook_id, include_deleted=True)
        if webhook.deleted_at is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="webhook is deleted")
        if not webhook.is_active:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="webhook is inactive")
        if delivery.status != "failed" or delivery.attempts >= settings.webhook_max_attempts:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"delivery cannot be retried in status {delivery.status} after {delivery.attempts} attempts",
            )

        attempts_before = delivery.attempts
        retried = self.retry_scheduler.retry_now(session, delivery, webhook)
        if retried is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="delivery is already being retried")

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.webhook_delivery",
            entity_id=str(retried.id),
            action="webhook.delivery.retried",
            before={"status": "failed", "attempts": attempts_before},
            after={"status": retried.status, "attempts": retried.attempts},
            correlation_id=actor_user.correlation_id,
        )
        return WebhookDeliveryRead.model_validate(retried)

    def test_webhook(self, session: Session, webhook_id: uuid.UUID) -> WebhookTestRead:
        webhook = self._load_webhook(session, webhook_id)
        payload = {
            "event": TEST_EVENT,
            "data": {"message": "This is a test webhook delivery"},
            "timestamp": utcnow().isoformat(),
        }
        delivery = self.dispatcher.dispatch(session, webhook, TEST_EVENT, payload)
        if delivery is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="webhook is inactive")
        return WebhookTestRead(
            webhook_id=webhook.id,
            payload=payload,
            delivery=WebhookDeliveryRead.model_validate(delivery),
        )

    def trigger(self, session: Session, event_name: str, payload: dict[str, Any]) -> list[uuid.UUID]:
        settings = get_settings()
        webhooks = session.scalars(
            select(Webhook)
            .where(and_(Webhook.is_active.is_(True), Webhook.deleted_at.is_(None)))
            .order_by(Webhook.created_at.asc())
        ).all()

        delivery_ids: list[uuid.UUID] = []
        for webhook in webhooks:
            if event_name not in (webhook.events or []):
                continue
            if settings.auto_run_webhook_deliveries:
                delivery = self.dispatcher.dispatch(session, webhook, event_name, payload)
                if delivery is not None:
                    delivery_ids.append(delivery.id)
                continue
            delivery = self.dispatcher.create_pending(session, webhook, event_name, payload)
            delivery_ids.append(delivery.id)
            self._enqueue(session, delivery)
        return delivery_ids

    def handle_entity_event(self, session: Session, envelope: dict[str, Any]) -> list[uuid.UUID]:
        event_name = str(envelope.get("event_type") or "")
        if not event_name:
            return []
        payload = {
            "event": event_name,
            "entity_type": envelope.get("entity_type"),
            "entity_id": str(envelope["entity_id"]) if envelope.get("entity_id") else None,
            "data": envelope.get("snapshot") if isinstance(envelope.get("snapshot"), dict) else {},
            "timestamp": envelope.get("occurred_at") or utcnow().isoformat(),
        }
        return self.trigger(session, event_name, payload)

    def _enqueue(self, session: Session, delivery: WebhookDelivery) -> None:
        from app.core.celery_app import webhook_deliver_task

        try:
            webhook_deliver_task.delay(str(delivery.id))
        except Exception as exc:
            logger.warning(
                "webhook.delivery.enqueue_failed",
                extra={
                    "webhook_id": str(delivery.webhook_id),
                    "delivery_id": str(delivery.id),
                    "event_name": delivery.event,
                    "error": str(exc)[:500],
                },
            )
            delivery.status = "failed"
            delivery.claimed_at = None
            delivery.next_retry_at = utcnow()
            delivery.error_message = f"enqueue failed: {exc}"[:2000]
            session.add(delivery)
            session.commit()

    def _load_webhook(self, session: Session, webhook_id: uuid.UUID, *, include_deleted: bool = False) -> Webhook:
        webhook = session.get(Webhook, webhook_id)
        if webhook is None or (webhook.deleted_at is not None and not include_deleted):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook not found")
        return webhook

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.metrics import observe_job, observe_webhook_retry_claim
from app.webhooks.dispatcher import WebhookDispatcher, is_deliverable
from app.webhooks.models import Webhook, WebhookDelivery, utcnow


logger = logging.getLogger("app.webhooks.delivery")


@dataclass
class SweepResult:
    attempted: list[uuid.UUID] = field(default_factory=list)
    abandoned: list[uuid.UUID] = field(default_factory=list)
    skipped: list[uuid.UUID] = field(default_factory=list)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


class WebhookRetryScheduler:
    def __init__(self, dispatcher: WebhookDispatcher | None = None) -> None:
        self.dispatcher = dispatcher or WebhookDispatcher()

    def run_sweep(self, session: Session, now: datetime | None = None) -> SweepResult:
        settings = get_settings()
        now = _as_utc(now or utcnow())
        stale_before = now - timedelta(seconds=settings.webhook_claim_timeout_seconds)
        started = time.perf_counter()
        final_status = "failed"
        result = SweepResult()
        logger.info("job.started", extra={"job_type": "webhook_retry_sweep", "status": "running"})

        try:
            candidates = session.execute(
                select(WebhookDelivery.id, WebhookDelivery.status, WebhookDelivery.attempts, WebhookDelivery.claimed_at)
                .where(
                    and_(
                        WebhookDelivery.attempts < settings.webhook_max_attempts,
                        or_(
                            and_(WebhookDelivery.status == "failed", WebhookDelivery.next_retry_at <= now),
                            and_(WebhookDelivery.status == "pending", WebhookDelivery.claimed_at <= stale_before),
                        ),
                    )
                )
                .order_by(WebhookDelivery.next_retry_at.asc().nulls_first(), WebhookDelivery.created_at.asc())
                .limit(settings.webhook_retry_batch_size)
            ).all()

            for delivery_id, observed_status, observed_attempts, observed_claim in candidates:
                if not self._claim(session, delivery_id, observed_status, observed_attempts, observed_claim, now):
                    observe_webhook_retry_claim("lost")
                    result.skipped.append(delivery_id)
                    continue
                observe_webhook_retry_claim("won")

                delivery = session.get(WebhookDelivery, delivery_id)
                if delivery is None:
                    continue
                webhook = session.get(Webhook, delivery.webhook_id)
                if not is_deliverable(webhook):
                    self._abandon(session, delivery)
                    result.abandoned.append(delivery_id)
                    continue

                self.dispatcher.attempt(session, delivery, webhook)
                result.attempted.append(delivery_id)
            final_status = "succeeded"
        finally:
            duration = time.perf_counter() - started
            observe_job(job_type="webhook_retry_sweep", status=final_status, duration=duration)
            logger.info(
                "job.finished",
                extra={
                    "job_type": "webhook_retry_sweep",
                    "status": final_status,
                    "duration_ms": round(duration * 1000, 2),
                    "attempts": len(result.attempted),
                },
            )
        return result

    def retry_now(self, session: Session, delivery: WebhookDelivery, webhook: Webhook) -> WebhookDelivery | None:
        """Manual redrive of a failed delivery regardless of next_retry_at; None when another worker holds it."""
        if not self._claim(session, delivery.id, "failed", delivery.attempts, delivery.claimed_at, utcnow()):
            observe_webhook_retry_claim("lost")
            return None
        observe_webhook_retry_claim("won")
        session.refresh(delivery)
        return self.dispatcher.attempt(session, delivery, webhook)

    def deliver_pending(self, session: Session, delivery_id: uuid.UUID) -> WebhookDelivery | None:
        delivery = session.get(WebhookDelivery, delivery_id)
        if delivery is None or delivery.status != "pending":
            return None

        if not self._claim(session, delivery_id, "pending", delivery.attempts, delivery.claimed_at, utcnow()):
            observe_webhook_retry_claim("lost")
            return None
        observe_webhook_retry_claim("won")

        delivery = session.get(WebhookDelivery, delivery_id)
        if delivery is None:
            return None
        webhook = session.get(Webhook, delivery.webhook_id)
        if not is_deliverable(webhook):
            self._abandon(session, delivery)
            return delivery
        return self.dispatcher.attempt(session, delivery, webhook)

    def _claim(
        self,
        session: Session,
        delivery_id: uuid.UUID,
        observed_status: str,
        observed_attempts: int,
        observed_claim: datetime | None,
        now: datetime,
    ) -> bool:
        """Compare-and-set on (status, attempts, claimed_at); exactly one concurrent caller sees rowcount 1."""
        claim_matches = (
            WebhookDelivery.claimed_at.is_(None) if observed_claim is None else WebhookDelivery.claimed_at == observed_claim
        )
        result = session.execute(
            update(WebhookDelivery)
            .where(
                and_(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.status == observed_status,
                    WebhookDelivery.attempts == observed_attempts,
                    claim_matches,
                )
            )
            .values(status="pending", claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    def _abandon(self, session: Session, delivery: WebhookDelivery) -> None:
        delivery.status = "failed"
        delivery.next_retry_at = None
        delivery.claimed_at = None
        delivery.error_message = "webhook deleted or inactive; delivery abandoned"
        session.add(delivery)
        session.commit()
        logger.info(
            "webhook.delivery.abandoned",
            extra={
                "webhook_id": str(delivery.webhook_id),
                "delivery_id": str(delivery.id),
                "event_name": delivery.event,
                "status": "failed",
                "attempts": delivery.attempts,
            },
        )

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base
from app.webhooks.dispatcher import WebhookDispatcher
from app.webhooks.models import Webhook, WebhookDelivery
from app.webhooks.retry import WebhookRetryScheduler
from app.webhooks.signing import canonical_json


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def webhook(db_session: Session) -> Webhook:
    row = Webhook(name="CRM sync", url="https://hooks.example.com/crm", secret="s3cr3t", events=["deal.updated"])
    db_session.add(row)
    db_session.commit()
    return row


class RecordingTransport(httpx.MockTransport):
    def __init__(self, status_code: int) -> None:
        self.requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(status_code, text="ack")

        super().__init__(handler)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _delivery(
    session: Session,
    webhook: Webhook,
    *,
    status: str = "failed",
    attempts: int = 1,
    next_retry_at: datetime | None = None,
    claimed_at: datetime | None = None,
) -> WebhookDelivery:
    delivery = WebhookDelivery(
        webhook_id=webhook.id,
        event="deal.updated",
        payload=canonical_json({"id": 1}),
        status=status,
        attempts=attempts,
        next_retry_at=next_retry_at,
        claimed_at=claimed_at,
    )
    session.add(delivery)
    session.commit()
    return delivery


def test_sweep_retries_due_failures_only(db_session: Session, webhook: Webhook) -> None:
    transport = RecordingTransport(200)
    scheduler = WebhookRetryScheduler(WebhookDispatcher(transport=transport))
    due = _delivery(db_session, webhook, next_retry_at=_now() - timedelta(minutes=1))
    not_due = _delivery(db_session, webhook, next_retry_at=_now() + timedelta(minutes=30))

    result = scheduler.run_sweep(db_session)

    assert result.attempted == [due.id]
    assert result.abandoned == []
    db_session.refresh(due)
    db_session.refresh(not_due)
    assert due.status == "success"
    assert due.attempts == 2
    assert not_due.status == "failed"
    assert not_due.attempts == 1
    assert transport.requests[0].headers["X-Webhook-Retry"] == "1"


def test_delivery_abandoned_after_max_attempts(db_session: Session, webhook: Webhook) -> None:
    transport = RecordingTransport(500)
    dispatcher = WebhookDispatcher(transport=transport)
    scheduler = WebhookRetryScheduler(dispatcher)
    delivery = dispatcher.dispatch(db_session, webhook, "deal.updated", {"id": 1})
    assert delivery is not None

    far_future = _now() + timedelta(days=1)
    for _ in range(4):
        scheduler.run_sweep(db_session, now=far_future)

    db_session.refresh(delivery)
    assert delivery.attempts == 5
    assert delivery.status == "failed"
    assert delivery.next_retry_at is None
    assert len(transport.requests) == 5
    assert [request.headers["X-Webhook-Retry"] for request in transport.requests] == ["0", "1", "2", "3", "4"]

    result = scheduler.run_sweep(db_session, now=far_future + timedelta(days=30))
    assert result.attempted == []
    assert len(transport.requests) == 5


def test_deleted_webhook_deliveries_are_abandoned(db_session: Session, webhook: Webhook) -> None:
    transport = RecordingTransport(200)
    scheduler = WebhookRetryScheduler(WebhookDispatcher(transport=transport))
    delivery = _delivery(db_session, webhook, attempts=2, next_retry_at=_now() - timedelta(minutes=1))
    webhook.deleted_at = _now()
    webhook.is_active = False
    db_session.commit()

    result = scheduler.run_sweep(db_session)

    assert result.abandoned == [delivery.id]
    assert transport.requests == []
    db_session.refresh(delivery)
    assert delivery.status == "failed"
    assert delivery.next_retry_at is None
    assert delivery.attempts == 2
    assert scheduler.run_sweep(db_session).abandoned == []


def test_stale_pending_deliveries_are_recovered(db_session: Session, webhook: Webhook) -> None:
    transport = RecordingTransport(200)
    scheduler = WebhookRetryScheduler(WebhookDispatcher(transport=transport))
    stale = _delivery(db_session, webhook, status="pending", attempts=0, claimed_at=_now() - timedelta(minutes=10))
    fresh = _delivery(db_session, webhook, status="pending", attempts=0, claimed_at=_now())

    result = scheduler.run_sweep(db_session)

    assert result.attempted == [stale.id]
    db_session.refresh(fresh)
    assert fresh.status == "pending"
    assert fresh.attempts == 0


def test_stale_claim_loses_to_concurrent_worker(db_session: Session, webhook: Webhook) -> None:
    transport = RecordingTransport(500)
    scheduler = WebhookRetryScheduler(WebhookDispatcher(transport=transport))
    delivery = _delivery(db_session, webhook, next_retry_at=_now() - timedelta(minutes=1))
    stale_view = db_session.get(WebhookDelivery, delivery.id)
    assert stale_view is not None
    assert stale_view.attempts == 1
    db_session.expunge(stale_view)

    scheduler.run_sweep(db_session)
    lost = scheduler.retry_now(db_session, stale_view, webhook)

    assert lost is None
    assert len(transport.requests) == 1
    current = db_session.get(WebhookDelivery, delivery.id)
    assert current is not None
    assert current.attempts == 2


def test_retry_now_ignores_schedule(db_session: Session, webhook: Webhook) -> None:
    transport = RecordingTransport(200)
    scheduler = WebhookRetryScheduler(WebhookDispatcher(transport=transport))
    delivery = _delivery(db_session, webhook, attempts=3, next_retry_at=_now() + timedelta(hours=1))

    retried = scheduler.retry_now(db_session, delivery, webhook)

    assert retried is not None
    assert retried.status == "success"
    assert retried.attempts == 4
    assert transport.requests[0].headers["X-Webhook-Retry"] == "3"


def test_deliver_pending_sends_once(db_session: Session, webhook: Webhook) -> None:
    transport = RecordingTransport(200)
    dispatcher = WebhookDispatcher(transport=transport)
    scheduler = WebhookRetryScheduler(dispatcher)
    delivery = dispatcher.create_pending(db_session, webhook, "deal.updated", {"id": 9})

    first = scheduler.deliver_pending(db_session, delivery.id)
    second = scheduler.deliver_pending(db_session, delivery.id)

    assert first is not None
    assert first.status == "success"
    assert second is None
    assert len(transport.requests) == 1


def test_concurrent_sweeps_attempt_stale_pending_delivery_once(db_session: Session, webhook: Webhook) -> None:
    delivery = _delivery(db_session, webhook, status="pending", attempts=0, claimed_at=_now() - timedelta(minutes=10))
    rival_session = Session(bind=db_session.get_bind())
    rival_transport = RecordingTransport(200)
    rival = WebhookRetryScheduler(WebhookDispatcher(transport=rival_transport))
    rival_view = rival_session.execute(
        select(WebhookDelivery.id, WebhookDelivery.status, WebhookDelivery.attempts, WebhookDelivery.claimed_at).where(
            WebhookDelivery.id == delivery.id
        )
    ).one()
    rival_claims: list[bool] = []
    sent: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append("sweep")
        won = rival._claim(
            rival_session,
            rival_view.id,
            rival_view.status,
            rival_view.attempts,
            rival_view.claimed_at,
            _now(),
        )
        rival_claims.append(won)
        if won:
            current = rival_session.get(WebhookDelivery, delivery.id)
            rival.dispatcher.attempt(rival_session, current, rival_session.get(Webhook, webhook.id))
        return httpx.Response(200, text="ack")

    scheduler = WebhookRetryScheduler(WebhookDispatcher(transport=httpx.MockTransport(handler)))
    try:
        result = scheduler.run_sweep(db_session)
    finally:
        rival_session.close()

    assert result.attempted == [delivery.id]
    assert rival_claims == [False]
    assert sent == ["sweep"]
    assert rival_transport.requests == []
    db_session.expire_all()
    stored = db_session.get(WebhookDelivery, delivery.id)
    assert stored is not None
    assert stored.status == "success"
    assert stored.attempts == 1


def test_stale_pending_deliveries_lead_the_batch(
    db_session: Session,
    webhook: Webhook,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("WEBHOOK_RETRY_BATCH_SIZE", "1")
    get_settings.cache_clear()
    transport = RecordingTransport(200)
    scheduler = WebhookRetryScheduler(WebhookDispatcher(transport=transport))
    due = _delivery(db_session, webhook, next_retry_at=_now() - timedelta(hours=2))
    stale = _delivery(db_session, webhook, status="pending", attempts=0, claimed_at=_now() - timedelta(minutes=10))

    assert scheduler.run_sweep(db_session).attempted == [stale.id]
    assert scheduler.run_sweep(db_session).attempted == [due.id]

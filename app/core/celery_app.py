from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

from celery import Celery
from celery.schedules import crontab
from sqlalchemy.orm import Session

from app.automation.scheduler import WorkflowRunScheduler
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.metrics import observe_job
from app.webhooks.retry import WebhookRetryScheduler


logger = logging.getLogger("app.jobs")
settings = get_settings()

celery_app = Celery("relay_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    timezone="UTC",
    beat_schedule={
        "webhook-retry-sweep": {
            "task": "app.tasks.webhook_retry_sweep",
            "schedule": float(settings.webhook_retry_interval_seconds),
        },
        "workflow-resume-sweep": {
            "task": "app.tasks.workflow_resume_sweep",
            "schedule": float(settings.workflow_resume_interval_seconds),
        },
        "workflow-time-based-tick": {
            "task": "app.tasks.workflow_time_based_tick",
            "schedule": crontab(minute=0),
        },
    },
)

workflow_scheduler = WorkflowRunScheduler()
webhook_retry_scheduler = WebhookRetryScheduler()

T = TypeVar("T")


def run_job(
    job_type: str,
    work: Callable[[Session], T],
    session_factory: Callable[[], Session] | None = None,
) -> T | None:
    """Runs one task body in its own session; failures are logged and never re-raised into the worker."""
    job_id = str(uuid.uuid4())
    started = time.perf_counter()
    final_status = "failed"
    logger.info("job.started", extra={"job_id": job_id, "job_type": job_type, "status": "running"})
    session = (session_factory or SessionLocal)()
    try:
        result = work(session)
        final_status = "succeeded"
        return result
    except Exception as exc:
        session.rollback()
        logger.exception(
            "job.failed",
            extra={"job_id": job_id, "job_type": job_type, "status": "failed", "error": str(exc)[:500]},
        )
        return None
    finally:
        session.close()
        duration = time.perf_counter() - started
        observe_job(job_type=job_type, status=final_status, duration=duration)
        logger.info(
            "job.finished",
            extra={
                "job_id": job_id,
                "job_type": job_type,
                "status": final_status,
                "duration_ms": round(duration * 1000, 2),
            },
        )


@celery_app.task(name="app.tasks.webhook_retry_sweep")
def webhook_retry_sweep_task() -> dict[str, Any] | None:
    def work(session: Session) -> dict[str, Any]:
        result = webhook_retry_scheduler.run_sweep(session)
        return {
            "attempted": len(result.attempted),
            "abandoned": len(result.abandoned),
            "skipped": len(result.skipped),
        }

    return run_job("webhook_retry_sweep_task", work)


@celery_app.task(name="app.tasks.webhook_deliver")
def webhook_deliver_task(delivery_id: str) -> str | None:
    def work(session: Session) -> str | None:
        delivery = webhook_retry_scheduler.deliver_pending(session, uuid.UUID(delivery_id))
        return delivery.status if delivery is not None else None

    return run_job("webhook_deliver", work)


@celery_app.task(name="app.tasks.workflow_resume_sweep")
def workflow_resume_sweep_task() -> list[str] | None:
    def work(session: Session) -> list[str]:
        return [str(run_id) for run_id in workflow_scheduler.resume_due_runs(session)]

    return run_job("workflow_resume_sweep_task", work)


@celery_app.task(name="app.tasks.workflow_time_based_tick")
def workflow_time_based_tick_task() -> list[str] | None:
    def work(session: Session) -> list[str]:
        return [str(run_id) for run_id in workflow_scheduler.run_time_based_workflows(session)]

    return run_job("workflow_time_based_tick_task", work)


@celery_app.task(name="app.tasks.workflow_advance")
def workflow_advance_task(run_id: str) -> str | None:
    def work(session: Session) -> str:
        return workflow_scheduler.advance(session, uuid.UUID(run_id)).status

    return run_job("workflow_advance", work)

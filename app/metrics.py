from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

automation_jobs_total = Counter(
    "automation_jobs_total",
    "Total background jobs by status",
    ["job_type", "status"],
)

automation_job_duration_seconds = Histogram(
    "automation_job_duration_seconds",
    "Background job duration in seconds",
    ["job_type"],
)

workflow_runs_total = Counter(
    "workflow_runs_total",
    "Workflow run state transitions by resulting status",
    ["status"],
)

workflow_step_outcomes_total = Counter(
    "workflow_step_outcomes_total",
    "Workflow step outcomes",
    ["step_type", "outcome"],
)

webhook_delivery_attempts_total = Counter(
    "webhook_delivery_attempts_total",
    "Webhook delivery attempts by outcome",
    ["outcome"],
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Webhook delivery attempt duration in seconds",
)

webhook_retry_claims_total = Counter(
    "webhook_retry_claims_total",
    "Webhook retry sweep claims by result",
    ["result"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            template = getattr(route, attribute, None)
            if isinstance(template, str) and template:
                return _PATH_PARAM_RE.sub("{id}", template)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_job(job_type: str, status: str, duration: float) -> None:
    automation_jobs_total.labels(job_type=job_type, status=status).inc()
    automation_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_workflow_run(status: str) -> None:
    workflow_runs_total.labels(status=status).inc()


def observe_workflow_step(step_type: str, outcome: str) -> None:
    workflow_step_outcomes_total.labels(step_type=step_type, outcome=outcome).inc()


def observe_webhook_attempt(outcome: str, duration: float) -> None:
    webhook_delivery_attempts_total.labels(outcome=outcome).inc()
    webhook_delivery_duration_seconds.observe(duration)


def observe_webhook_retry_claim(result: str) -> None:
    webhook_retry_claims_total.labels(result=result).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

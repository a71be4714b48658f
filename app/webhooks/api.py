from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import ActorUser, get_current_user, require_permission
from app.api.errors import error_response
from app.core.database import get_db
from app.webhooks.schemas import (
    DeliveryStatus,
    WebhookCreate,
    WebhookDeliveryRead,
    WebhookRead,
    WebhookSecretRead,
    WebhookTestRead,
    WebhookUpdate,
)
from app.webhooks.service import WebhookService


webhooks_router = APIRouter(prefix="/api/automation", tags=["automation.webhooks"])
webhook_service = WebhookService()


@webhooks_router.get("/webhooks", response_model=list[WebhookRead])
def list_webhooks(
    request: Request,
    is_active: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WebhookRead] | JSONResponse:
    try:
        require_permission(user, "automation.webhooks.read")
        return webhook_service.list_webhooks(db, is_active=is_active, limit=limit, offset=offset)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_webhook_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@webhooks_router.post("/webhooks", response_model=WebhookSecretRead, status_code=status.HTTP_201_CREATED)
def create_webhook(
    request: Request,
    dto: WebhookCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WebhookSecretRead | JSONResponse:
    try:
        require_permission(user, "automation.webhooks.manage")
        return webhook_service.create_webhook(db, dto, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_webhook_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@webhooks_router.post("/webhooks/deliveries/{delivery_id}/retry", response_model=WebhookDeliveryRead)
def retry_webhook_delivery(
    request: Request,
    delivery_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WebhookDeliveryRead | JSONResponse:
    try:
        require_permission(user, "automation.webhooks.manage")
        return webhook_service.retry_delivery(db, delivery_id, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_webhook_delivery_retry_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@webhooks_router.get("/webhooks/{webhook_id}", response_model=WebhookRead)
def get_webhook(
    request: Request,
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WebhookRead | JSONResponse:
    try:
        require_permission(user, "automation.webhooks.read")
        return webhook_service.get_webhook(db, webhook_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_webhook_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@webhooks_router.patch("/webhooks/{webhook_id}", response_model=WebhookRead)
def update_webhook(
    request: Request,
    webhook_id: uuid.UUID,
    dto: WebhookUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WebhookRead | JSONResponse:
    try:
        require_permission(user, "automation.webhooks.manage")
        return webhook_service.update_webhook(db, webhook_id, dto, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_webhook_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@webhooks_router.delete("/webhooks/{webhook_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_webhook(
    request: Request,
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_permission(user, "automation.webhooks.manage")
        webhook_service.soft_delete_webhook(db, webhook_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_webhook_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@webhooks_router.post("/webhooks/{webhook_id}/rotate-secret", response_model=WebhookSecretRead)
def rotate_webhook_secret(
    request: Request,
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WebhookSecretRead | JSONResponse:
    try:
        require_permission(user, "automation.webhooks.manage")
        return webhook_service.rotate_secret(db, webhook_id, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_webhook_rotate_secret_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@webhooks_router.get("/webhooks/{webhook_id}/deliveries", response_model=list[WebhookDeliveryRead])
def list_webhook_deliveries(
    request: Request,
    webhook_id: uuid.UUID,
    delivery_status: DeliveryStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WebhookDeliveryRead] | JSONResponse:
    try:
        require_permission(user, "automation.webhooks.read")
        return webhook_service.list_deliveries(
            db,
            webhook_id,
            delivery_status=delivery_status,
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_webhook_deliveries_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@webhooks_router.post("/webhooks/{webhook_id}/test", response_model=WebhookTestRead)
def test_webhook(
    request: Request,
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WebhookTestRead | JSONResponse:
    try:
        require_permission(user, "automation.webhooks.manage")
        return webhook_service.test_webhook(db, webhook_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_webhook_test_failed",
            message=str(exc.detail),
            details=exc.detail,
        )

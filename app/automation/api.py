from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import ActorUser, get_current_user, require_any_permission, require_permission
from app.api.errors import error_response
from app.automation.schemas import (
    EntityType,
    TriggerType,
    WorkflowCreate,
    WorkflowExecuteRequest,
    WorkflowRead,
    WorkflowRunRead,
    WorkflowTestResult,
    WorkflowUpdate,
)
from app.automation.service import WorkflowService
from app.core.database import get_db


workflows_router = APIRouter(prefix="/api/automation", tags=["automation.workflows"])
workflow_service = WorkflowService()


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@workflows_router.get("/workflows", response_model=list[WorkflowRead])
def list_workflows(
    request: Request,
    entity_type: EntityType | None = Query(default=None),
    trigger_type: TriggerType | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowRead] | JSONResponse:
    try:
        require_permission(user, "automation.workflows.read")
        return workflow_service.list_workflows(
            db,
            entity_type=entity_type,
            trigger_type=trigger_type,
            is_active=is_active,
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_list_failed")


@workflows_router.post("/workflows", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    request: Request,
    dto: WorkflowCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automation.workflows.manage")
        return workflow_service.create_workflow(db, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_create_failed")


@workflows_router.get("/workflows/runs/{run_id}", response_model=WorkflowRunRead)
def get_workflow_run(
    request: Request,
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRunRead | JSONResponse:
    try:
        require_permission(user, "automation.workflows.read")
        return workflow_service.get_run(db, run_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_run_get_failed")


@workflows_router.get("/workflows/{workflow_id}", response_model=WorkflowRead)
def get_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automation.workflows.read")
        return workflow_service.get_workflow(db, workflow_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_get_failed")


@workflows_router.patch("/workflows/{workflow_id}", response_model=WorkflowRead)
def update_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automation.workflows.manage")
        return workflow_service.update_workflow(db, workflow_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_update_failed")


@workflows_router.delete("/workflows/{workflow_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_permission(user, "automation.workflows.manage")
        workflow_service.soft_delete_workflow(db, workflow_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_delete_failed")


@workflows_router.post("/workflows/{workflow_id}/execute", response_model=WorkflowRunRead)
def execute_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowExecuteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRunRead | JSONResponse:
    try:
        require_any_permission(user, ["automation.workflows.execute", "automation.workflows.manage"])
        return workflow_service.execute_workflow(db, workflow_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_execute_failed")


@workflows_router.post("/workflows/{workflow_id}/test", response_model=WorkflowTestResult)
def test_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowExecuteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowTestResult | JSONResponse:
    try:
        require_any_permission(user, ["automation.workflows.execute", "automation.workflows.manage"])
        return workflow_service.test_workflow(db, workflow_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_test_failed")


@workflows_router.get("/workflows/{workflow_id}/runs", response_model=list[WorkflowRunRead])
def list_workflow_runs(
    request: Request,
    workflow_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowRunRead] | JSONResponse:
    try:
        require_permission(user, "automation.workflows.read")
        return workflow_service.list_runs(db, workflow_id, limit=limit, offset=offset)
    except HTTPException as exc:
        return _failed(request, exc, "automation_workflow_runs_list_failed")

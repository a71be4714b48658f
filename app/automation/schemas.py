from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


EntityType = Literal["contact", "lead", "deal", "company", "task"]
TriggerType = Literal["create", "update", "delete", "time_based", "manual"]
StepType = Literal["condition", "action", "delay"]
RunStatus = Literal["running", "completed", "failed", "waiting"]
ConditionOperator = Literal["equals", "not_equals", "contains", "greater_than", "less_than"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
DelayUnit = Literal["minutes", "hours", "days"]


class ConditionConfig(BaseModel):
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None


class UpdateFieldAction(BaseModel):
    action_type: Literal["update_field"]
    field: str = Field(min_length=1)
    value: Any = None


class CreateTaskAction(BaseModel):
    action_type: Literal["create_task"]
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: TaskPriority = "medium"
    due_in_days: int | None = Field(default=None, ge=0)
    assigned_to: UUID | None = None


class SendEmailAction(BaseModel):
    action_type: Literal["send_email"]
    template_name: str = Field(min_length=1)
    recipient: Literal["owner", "contact"] = "contact"


class AssignUserAction(BaseModel):
    action_type: Literal["assign_user"]
    strategy: Literal["round_robin", "specific"]
    user_ids: list[UUID] = Field(default_factory=list)
    user_id: UUID | None = None

    @model_validator(mode="after")
    def validate_strategy(self) -> "AssignUserAction":
        if self.strategy == "specific" and self.user_id is None:
            raise ValueError("user_id is required for the specific strategy")
        return self


ActionConfig = Annotated[
    UpdateFieldAction | CreateTaskAction | SendEmailAction | AssignUserAction,
    Field(discriminator="action_type"),
]


class DelayConfig(BaseModel):
    duration: int = Field(gt=0)
    unit: DelayUnit = "minutes"


class ConditionStep(BaseModel):
    step_type: Literal["condition"]
    position: int | None = Field(default=None, ge=0)
    config: ConditionConfig


class ActionStep(BaseModel):
    step_type: Literal["action"]
    position: int | None = Field(default=None, ge=0)
    config: ActionConfig


class DelayStep(BaseModel):
    step_type: Literal["delay"]
    position: int | None = Field(default=None, ge=0)
    config: DelayConfig


StepDefinition = Annotated[ConditionStep | ActionStep | DelayStep, Field(discriminator="step_type")]

step_list_adapter = TypeAdapter(list[StepDefinition])


def normalize_steps(steps: list[StepDefinition]) -> list[StepDefinition]:
    """Assigns positions by list index when omitted and enforces 0..n-1 contiguity."""
    if all(step.position is None for step in steps):
        for index, step in enumerate(steps):
            step.position = index
        return steps

    if any(step.position is None for step in steps):
        raise ValueError("either every step sets position or none does")

    positions = sorted(step.position for step in steps if step.position is not None)
    if positions != list(range(len(steps))):
        raise ValueError("step positions must be unique and contiguous from 0")
    return sorted(steps, key=lambda step: step.position or 0)


class ScheduleConfig(BaseModel):
    schedule: Literal["hourly", "daily", "weekly"]
    hour: int = Field(default=9, ge=0, le=23)
    day: int = Field(default=1, ge=0, le=6)


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    entity_type: EntityType
    trigger_type: TriggerType
    trigger_config: dict[str, Any] | None = None
    is_active: bool = True
    steps: list[StepDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_workflow_structure(self) -> "WorkflowCreate":
        self.steps = normalize_steps(self.steps)
        if self.trigger_type == "time_based":
            self.trigger_config = ScheduleConfig.model_validate(self.trigger_config or {}).model_dump()
        return self


class WorkflowUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    entity_type: EntityType | None = None
    trigger_type: TriggerType | None = None
    trigger_config: dict[str, Any] | None = None
    is_active: bool | None = None
    steps: list[StepDefinition] | None = None

    @model_validator(mode="after")
    def validate_workflow_structure(self) -> "WorkflowUpdate":
        if self.steps is not None:
            self.steps = normalize_steps(self.steps)
        if self.trigger_type == "time_based":
            self.trigger_config = ScheduleConfig.model_validate(self.trigger_config or {}).model_dump()
        return self


class WorkflowStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    step_type: StepType
    config: dict[str, Any]


class WorkflowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    entity_type: EntityType
    trigger_type: TriggerType
    trigger_config: dict[str, Any] | None
    is_active: bool
    created_by: str | None
    execution_count: int
    last_executed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    steps: list[WorkflowStepRead] = Field(default_factory=list)


class WorkflowRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    trigger_type: TriggerType
    entity_type: EntityType
    entity_id: UUID | None
    status: RunStatus
    cursor: int
    resume_at: datetime | None
    trace: list[dict[str, Any]]
    context: dict[str, Any]
    error_message: str | None
    correlation_id: str | None
    started_at: datetime
    finished_at: datetime | None


class WorkflowExecuteRequest(BaseModel):
    entity_id: UUID | None = None
    snapshot: dict[str, Any] | None = None


class WorkflowTestStep(BaseModel):
    position: int
    step_type: StepType
    outcome: str
    detail: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class WorkflowTestResult(BaseModel):
    workflow_id: UUID
    workflow_name: str
    dry_run: bool = True
    status: RunStatus
    steps: list[WorkflowTestStep] = Field(default_factory=list)

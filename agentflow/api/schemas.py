from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agentflow.storage.models import AgentStatus, Workflow, WorkflowStep

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "unavailable",
    "server_error",
}

# Upper bound for free-text intents sent to the planner
MAX_INTENT_LENGTH = 4000


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            return "server_error"
        return value


class Envelope(BaseModel):
    """API envelope format shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CreateWorkflowRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    intent: str = Field(..., min_length=1, max_length=MAX_INTENT_LENGTH)
    session_id: str = Field(..., min_length=1, max_length=255)
    execute: bool = False

    @field_validator("intent")
    @classmethod
    def _strip_intent(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("intent must not be blank")
        return stripped


class ConfirmRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    confirmed: bool = True


class ApproveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    approved_by: Optional[str] = Field(default=None, max_length=255)


class UserInteractionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resolution: Any


class ScheduleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schedule_type: Literal["once", "hourly", "daily", "weekly", "biweekly", "monthly"]
    config: Dict[str, Any] = Field(default_factory=dict)
    max_executions: Optional[int] = Field(default=None, ge=1)


class StepResponse(BaseModel):
    step_number: int
    step_type: str
    description: str
    tool_name: Optional[str] = None
    status: str
    requires_confirmation: bool = False
    email_details: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, step: WorkflowStep) -> "StepResponse":
        return cls(
            step_number=step.step_number,
            step_type=step.step_type,
            description=step.description,
            tool_name=step.tool_name,
            status=step.status,
            requires_confirmation=step.requires_confirmation,
            email_details=step.email_details,
            result=step.result,
            error_message=step.error_message,
            completed_at=step.completed_at,
        )


class WorkflowResponse(BaseModel):
    id: str
    session_id: str
    user_id: Optional[str] = None
    user_intent: str
    status: str
    current_step: Optional[int] = None
    is_scheduled: bool = False
    schedule_type: Optional[str] = None
    next_run_at: Optional[datetime] = None
    execution_count: int = 0
    requires_approval: bool = False
    created_at: datetime
    completed_at: Optional[datetime] = None
    steps: List[StepResponse] = Field(default_factory=list)

    @classmethod
    def from_model(cls, workflow: Workflow) -> "WorkflowResponse":
        return cls(
            id=workflow.id,
            session_id=workflow.session_id,
            user_id=workflow.user_id,
            user_intent=workflow.user_intent,
            status=workflow.status,
            current_step=workflow.current_step,
            is_scheduled=workflow.is_scheduled,
            schedule_type=workflow.schedule_type,
            next_run_at=workflow.next_run_at,
            execution_count=workflow.execution_count,
            requires_approval=workflow.requires_approval,
            created_at=workflow.created_at,
            completed_at=workflow.completed_at,
            steps=[StepResponse.from_model(step) for step in workflow.ordered_steps()],
        )


class StatusEntry(BaseModel):
    timestamp: datetime
    message: str

    @classmethod
    def from_model(cls, status: AgentStatus) -> "StatusEntry":
        return cls(timestamp=status.created_at, message=status.message)


class StatusListResponse(BaseModel):
    session_id: str
    items: List[StatusEntry]


__all__ = [
    "ApproveRequest",
    "ConfirmRequest",
    "CreateWorkflowRequest",
    "Envelope",
    "ErrorBody",
    "ScheduleRequest",
    "StatusEntry",
    "StatusListResponse",
    "StepResponse",
    "UserInteractionRequest",
    "WorkflowResponse",
]

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from agentflow.scheduling import (
    SCHEDULE_TYPES,
    calculate_next_run,
    parse_time_of_day,
    parse_weekday,
    week_monday,
)

WORKFLOW_STATUSES = (
    "draft",
    "approved",
    "running",
    "waiting_user_input",
    "completed",
    "failed",
    "cancelled",
)
# Statuses from which a run may start or resume
EXECUTABLE_STATUSES = ("approved", "draft", "waiting_user_input")
CANCELLABLE_STATUSES = ("draft", "approved", "running", "waiting_user_input")
TERMINAL_WORKFLOW_STATUSES = ("completed", "failed", "cancelled")

STEP_TYPES = ("tool_call", "analysis", "decision", "notification")
STEP_STATUSES = (
    "pending",
    "running",
    "completed",
    "failed",
    "cancelled",
    "pending_confirmation",
    "skipped",
)
# Step statuses that are never re-run when a workflow resumes
SETTLED_STEP_STATUSES = ("completed", "skipped", "cancelled")

EXECUTION_STATUSES = ("running", "completed", "failed", "cancelled", "waiting_user_input")


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    is_active: bool = True
    external_token_expires_at: Optional[datetime] = None
    meta: Dict | None = None

    def has_valid_token(self, now: Optional[datetime] = None) -> bool:
        """Whether the user's external-service credential can still be used."""
        if self.external_token_expires_at is None:
            return False
        return self.external_token_expires_at > (now or datetime.utcnow())


@dataclass
class UserDocument:
    id: str
    owner_user_id: str
    filename: str
    path: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    document_type: str = "other"
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def size_human(self) -> str:
        size = float(self.size)
        for unit in ("B", "KB", "MB", "GB"):
            if size < 1024 or unit == "GB":
                return f"{int(size)} {unit}" if unit == "B" else f"{size:.1f} {unit}"
            size /= 1024
        return f"{size:.1f} GB"


@dataclass
class WorkflowStep:
    step_number: int
    step_type: str
    description: str
    tool_name: Optional[str] = None
    tool_parameters: Dict[str, Any] = field(default_factory=dict)
    expected_output_format: Dict | None = None
    requires_confirmation: bool = False
    status: str = "pending"
    result: Dict | None = None
    error_message: Optional[str] = None
    email_details: Dict | None = None
    completed_at: Optional[datetime] = None
    # Explicit classification tags; keyword heuristics apply only when unset
    retry_group: Optional[str] = None
    decision_kind: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STEP_STATUSES

    @property
    def output_fields(self) -> List[str]:
        fmt = self.expected_output_format or {}
        fields = fmt.get("fields") if isinstance(fmt, dict) else None
        if isinstance(fields, dict):
            return list(fields.keys())
        if isinstance(fields, list):
            return [str(f) for f in fields]
        return []

    def mark_running(self) -> None:
        self.status = "running"
        self.error_message = None

    def complete(self, result: Dict, *, now: Optional[datetime] = None) -> None:
        self.result = result
        self.status = "completed"
        self.error_message = None
        self.completed_at = now or datetime.utcnow()

    def fail(self, message: str) -> None:
        self.status = "failed"
        self.error_message = message

    def skip(self, result: Dict, *, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
        self.result = result
        self.status = "skipped"
        self.error_message = reason
        self.completed_at = now or datetime.utcnow()

    def await_confirmation(self, email_details: Dict, result: Dict) -> None:
        self.email_details = email_details
        self.result = result
        self.requires_confirmation = True
        self.status = "pending_confirmation"

    def cancel(self) -> None:
        self.status = "cancelled"

    def reset(self) -> None:
        self.status = "pending"
        self.result = None
        self.error_message = None
        self.email_details = None
        self.requires_confirmation = False
        self.completed_at = None


@dataclass
class Workflow:
    id: str
    session_id: str
    user_intent: str
    user_id: Optional[str] = None
    status: str = "draft"
    current_step: Optional[int] = None
    steps: List[WorkflowStep] = field(default_factory=list)
    is_scheduled: bool = False
    schedule_type: Optional[str] = None
    schedule_config: Dict | None = None
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    execution_count: int = 0
    max_executions: Optional[int] = None
    requires_approval: bool = False
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    user_interaction_message: Optional[str] = None
    user_interaction_required: Dict | None = None
    is_template: bool = False
    template_name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        session_id: str,
        user_intent: str,
        *,
        user_id: Optional[str] = None,
        steps: Optional[List[WorkflowStep]] = None,
    ) -> "Workflow":
        return cls(
            id=_new_id(),
            session_id=session_id,
            user_intent=user_intent,
            user_id=user_id,
            steps=list(steps or []),
        )

    # Steps

    def ordered_steps(self) -> List[WorkflowStep]:
        return sorted(self.steps, key=lambda s: s.step_number)

    def get_step(self, step_number: int) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def add_step(self, step: WorkflowStep) -> None:
        if self.get_step(step.step_number) is not None:
            raise ValueError(f"duplicate step number {step.step_number}")
        self.steps.append(step)

    # Lifecycle

    def can_execute(self) -> bool:
        if self.requires_approval and self.approved_at is None:
            return False
        return self.status in EXECUTABLE_STATUSES

    def require_approval(self) -> "Workflow":
        self.requires_approval = True
        self.status = "draft"
        return self

    def approve(self, user_id: str, *, now: Optional[datetime] = None) -> "Workflow":
        self.approved_at = now or datetime.utcnow()
        self.approved_by = user_id
        self.status = "approved"
        return self

    def require_user_interaction(self, message: str, context: Optional[Dict] = None) -> "Workflow":
        self.user_interaction_message = message
        self.user_interaction_required = dict(context or {})
        self.status = "waiting_user_input"
        return self

    def resolve_user_interaction(self, resolution: Any, *, now: Optional[datetime] = None) -> "Workflow":
        merged = dict(self.user_interaction_required or {})
        merged["resolution"] = resolution
        merged["resolved_at"] = (now or datetime.utcnow()).isoformat()
        self.user_interaction_required = merged
        self.status = "approved"
        return self

    def has_user_interaction(self) -> bool:
        return bool(self.user_interaction_required) and self.status == "waiting_user_input"

    def save_as_template(self, name: str) -> "Workflow":
        self.is_template = True
        self.template_name = name
        return self

    def reset_for_run(self) -> "Workflow":
        """Prepare a finished recurring workflow for its next run."""
        for step in self.steps:
            step.reset()
        self.current_step = None
        self.completed_at = None
        if self.status in ("completed", "failed"):
            self.status = "approved" if (not self.requires_approval or self.approved_at) else "draft"
        return self

    def recover_interrupted(self) -> List[int]:
        """Park a run whose process died so it can be resumed; returns reset step numbers."""
        reset = []
        for step in self.ordered_steps():
            if step.status == "running":
                step.status = "pending"
                step.error_message = None
                reset.append(step.step_number)
        self.status = "waiting_user_input"
        return reset

    # Scheduling

    def _enable_schedule(self, schedule_type: str, config: Dict, now: Optional[datetime]) -> "Workflow":
        if schedule_type not in SCHEDULE_TYPES:
            raise ValueError(f"unknown schedule type: {schedule_type!r}")
        self.is_scheduled = True
        self.schedule_type = schedule_type
        self.schedule_config = config
        if schedule_type != "once":
            self.next_run_at = calculate_next_run(schedule_type, config, now or datetime.utcnow())
        return self

    def schedule_once(self, run_at: datetime) -> "Workflow":
        self._enable_schedule("once", {"run_at": run_at.isoformat()}, None)
        self.next_run_at = run_at
        return self

    def schedule_hourly(self, minute: int = 0, *, now: Optional[datetime] = None) -> "Workflow":
        if not 0 <= int(minute) <= 59:
            raise ValueError(f"invalid minute: {minute}")
        return self._enable_schedule("hourly", {"minute": int(minute)}, now)

    def schedule_daily(self, time: str = "12:00", *, now: Optional[datetime] = None) -> "Workflow":
        parse_time_of_day(time)
        return self._enable_schedule("daily", {"time": time}, now)

    def schedule_weekly(
        self, day_of_week: str = "monday", time: str = "12:00", *, now: Optional[datetime] = None
    ) -> "Workflow":
        parse_weekday(day_of_week)
        parse_time_of_day(time)
        return self._enable_schedule(
            "weekly", {"day_of_week": day_of_week.lower(), "time": time}, now
        )

    def schedule_biweekly(
        self, day_of_week: str = "monday", time: str = "12:00", *, now: Optional[datetime] = None
    ) -> "Workflow":
        parse_weekday(day_of_week)
        parse_time_of_day(time)
        anchor = now or datetime.utcnow()
        config = {
            "day_of_week": day_of_week.lower(),
            "time": time,
            "start_week": anchor.isocalendar()[1],
            "anchor_date": week_monday(anchor.date()).isoformat(),
        }
        return self._enable_schedule("biweekly", config, anchor)

    def schedule_monthly(
        self, day_of_month: int = 1, time: str = "12:00", *, now: Optional[datetime] = None
    ) -> "Workflow":
        if not 1 <= int(day_of_month) <= 31:
            raise ValueError(f"invalid day of month: {day_of_month}")
        parse_time_of_day(time)
        return self._enable_schedule(
            "monthly", {"day_of_month": int(day_of_month), "time": time}, now
        )

    def unschedule(self) -> "Workflow":
        self.is_scheduled = False
        self.next_run_at = None
        return self

    def is_due_for_execution(self, now: Optional[datetime] = None) -> bool:
        if not self.is_scheduled or self.next_run_at is None:
            return False
        if self.max_executions is not None and self.execution_count >= self.max_executions:
            return False
        return self.next_run_at <= (now or datetime.utcnow())

    def mark_executed(self, now: Optional[datetime] = None) -> "Workflow":
        now = now or datetime.utcnow()
        self.last_run_at = now
        self.execution_count += 1
        if self.schedule_type == "once":
            self.is_scheduled = False
            self.next_run_at = None
        elif self.is_scheduled and self.schedule_type:
            self.next_run_at = calculate_next_run(self.schedule_type, self.schedule_config, now)
        return self


@dataclass
class WorkflowExecution:
    id: str
    workflow_id: str
    execution_number: int
    status: str = "running"
    step_results: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    @classmethod
    def start(cls, workflow_id: str, execution_number: int) -> "WorkflowExecution":
        return cls(id=_new_id(), workflow_id=workflow_id, execution_number=execution_number)

    def _finish(self, status: str, now: Optional[datetime]) -> None:
        self.status = status
        self.completed_at = now or datetime.utcnow()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()

    def complete(self, *, now: Optional[datetime] = None) -> None:
        self._finish("completed", now)

    def fail(self, message: str, *, now: Optional[datetime] = None) -> None:
        self.error_message = message
        self._finish("failed", now)

    def cancel(self, *, now: Optional[datetime] = None) -> None:
        self._finish("cancelled", now)

    def pause_for_user_input(self) -> None:
        self.status = "waiting_user_input"


@dataclass
class AgentStatus:
    id: str
    session_id: str
    message: str
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(cls, session_id: str, message: str) -> "AgentStatus":
        return cls(id=_new_id(), session_id=session_id, message=message)

    def as_dict(self) -> Dict[str, str]:
        return {"timestamp": self.created_at.isoformat(), "message": self.message}

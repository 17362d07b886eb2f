from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from agentflow.logging import get_logger
from agentflow.storage.errors import ConstraintViolation
from agentflow.storage.models import (
    AgentStatus,
    User,
    UserDocument,
    Workflow,
    WorkflowExecution,
    WorkflowStep,
)


class MemoryStore:
    """In-memory backing store persisted to a JSON snapshot after every write."""

    def __init__(self, fs_root: str = "/tmp/agentflow") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.documents: Dict[str, UserDocument] = {}
        self.workflows: Dict[str, Workflow] = {}
        self.executions: Dict[str, List[WorkflowExecution]] = {}
        self.statuses: Dict[str, List[AgentStatus]] = {}
        # RLock so store methods may call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # Users and documents

    def create_user(self, email: str, *, name: str | None = None, user_id: str | None = None) -> User:
        with self._data_lock:
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=user_id or str(uuid.uuid4()), email=email, name=name)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            self.users[user.id] = user
            self._persist_state()
            return user

    def create_document(
        self,
        owner_user_id: str,
        filename: str,
        path: str,
        *,
        size: int = 0,
        mime_type: str = "application/octet-stream",
        document_type: str = "other",
        document_id: str | None = None,
    ) -> UserDocument:
        with self._data_lock:
            if owner_user_id not in self.users:
                raise ConstraintViolation("document owner not found", {"owner_user_id": owner_user_id})
            doc = UserDocument(
                id=document_id or str(uuid.uuid4()),
                owner_user_id=owner_user_id,
                filename=filename,
                path=path,
                size=size,
                mime_type=mime_type,
                document_type=document_type,
            )
            self.documents[doc.id] = doc
            self._persist_state()
            return doc

    def get_document(self, document_id: str) -> Optional[UserDocument]:
        with self._data_lock:
            return self.documents.get(str(document_id))

    def list_documents(self, owner_user_id: str) -> List[UserDocument]:
        with self._data_lock:
            return [d for d in self.documents.values() if d.owner_user_id == owner_user_id]

    # Workflows

    def create_workflow(self, workflow: Workflow) -> Workflow:
        with self._data_lock:
            if workflow.id in self.workflows:
                raise ConstraintViolation("workflow already exists", {"workflow_id": workflow.id})
            numbers = [s.step_number for s in workflow.steps]
            if len(numbers) != len(set(numbers)):
                raise ConstraintViolation(
                    "step numbers must be unique within a workflow",
                    {"workflow_id": workflow.id, "step_numbers": numbers},
                )
            self.workflows[workflow.id] = workflow
            self._persist_state()
            return workflow

    def save_workflow(self, workflow: Workflow) -> Workflow:
        """Persist the workflow and all of its steps as one write."""
        with self._data_lock:
            self.workflows[workflow.id] = workflow
            self._persist_state()
            return workflow

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._data_lock:
            return self.workflows.get(workflow_id)

    def list_workflows_for_session(
        self, session_id: str, *, statuses: Optional[Iterable[str]] = None
    ) -> List[Workflow]:
        allowed = set(statuses) if statuses else None
        with self._data_lock:
            matches = [
                wf
                for wf in self.workflows.values()
                if wf.session_id == session_id and (allowed is None or wf.status in allowed)
            ]
        return sorted(matches, key=lambda wf: wf.created_at, reverse=True)

    def list_due_workflows(self, now: datetime, limit: int = 10) -> List[Workflow]:
        with self._data_lock:
            due = [wf for wf in self.workflows.values() if wf.is_due_for_execution(now)]
        due.sort(key=lambda wf: wf.next_run_at)
        return due[:limit]

    def list_interrupted_workflows(self, started_before: datetime) -> List[Workflow]:
        """``running`` workflows without a run started after ``started_before``."""
        with self._data_lock:
            matches = [
                wf
                for wf in self.workflows.values()
                if wf.status == "running"
                and not any(
                    e.status == "running" and e.started_at > started_before
                    for e in self.executions.get(wf.id, [])
                )
            ]
        return sorted(matches, key=lambda wf: wf.created_at)

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._data_lock:
            removed = self.workflows.pop(workflow_id, None)
            self.executions.pop(workflow_id, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    # Executions

    def create_execution(self, workflow_id: str) -> WorkflowExecution:
        with self._data_lock:
            history = self.executions.setdefault(workflow_id, [])
            number = max((e.execution_number for e in history), default=0) + 1
            execution = WorkflowExecution.start(workflow_id, number)
            history.append(execution)
            self._persist_state()
            return execution

    def save_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._data_lock:
            history = self.executions.setdefault(execution.workflow_id, [])
            for idx, existing in enumerate(history):
                if existing.id == execution.id:
                    history[idx] = execution
                    break
            else:
                history.append(execution)
            self._persist_state()
            return execution

    def list_executions(self, workflow_id: str) -> List[WorkflowExecution]:
        with self._data_lock:
            return sorted(self.executions.get(workflow_id, []), key=lambda e: e.execution_number)

    # Status lines

    def add_status(self, session_id: str, message: str) -> AgentStatus:
        with self._data_lock:
            status = AgentStatus.new(session_id, message)
            self.statuses.setdefault(session_id, []).append(status)
            self._persist_state()
            return status

    def list_statuses(self, session_id: str, since: Optional[datetime] = None) -> List[AgentStatus]:
        with self._data_lock:
            entries = list(self.statuses.get(session_id, []))
        if since is not None:
            entries = [s for s in entries if s.created_at > since]
        return entries

    def clear_statuses(self, session_id: str) -> int:
        with self._data_lock:
            removed = len(self.statuses.pop(session_id, []))
            self._persist_state()
            return removed

    # Persistence

    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "documents": [self._serialize_document(d) for d in self.documents.values()],
                "workflows": [self._serialize_workflow(w) for w in self.workflows.values()],
                "executions": [
                    self._serialize_execution(e)
                    for history in self.executions.values()
                    for e in history
                ],
                "statuses": [
                    self._serialize_status(s)
                    for entries in self.statuses.values()
                    for s in entries
                ],
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".json.tmp")
            try:
                tmp_path.write_text(json.dumps(state, indent=2, ensure_ascii=False, default=str))
                tmp_path.replace(path)
            except OSError as exc:
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.documents = {
            d["id"]: self._deserialize_document(d) for d in data.get("documents", [])
        }
        self.workflows = {
            w["id"]: self._deserialize_workflow(w) for w in data.get("workflows", [])
        }
        self.executions = {}
        for exec_data in data.get("executions", []):
            execution = self._deserialize_execution(exec_data)
            self.executions.setdefault(execution.workflow_id, []).append(execution)
        for history in self.executions.values():
            history.sort(key=lambda e: e.execution_number)
        self.statuses = {}
        for status_data in data.get("statuses", []):
            status = self._deserialize_status(status_data)
            self.statuses.setdefault(status.session_id, []).append(status)
        self.logger.info(
            "memory_store_loaded",
            workflows=len(self.workflows),
            users=len(self.users),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "external_token_expires_at": self._serialize_datetime(user.external_token_expires_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            created_at=self._deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
            is_active=data.get("is_active", True),
            external_token_expires_at=self._deserialize_datetime(data.get("external_token_expires_at")),
            meta=data.get("meta"),
        )

    def _serialize_document(self, doc: UserDocument) -> dict:
        return {
            "id": doc.id,
            "owner_user_id": doc.owner_user_id,
            "filename": doc.filename,
            "path": doc.path,
            "size": doc.size,
            "mime_type": doc.mime_type,
            "document_type": doc.document_type,
            "created_at": self._serialize_datetime(doc.created_at),
        }

    def _deserialize_document(self, data: dict) -> UserDocument:
        return UserDocument(
            id=str(data["id"]),
            owner_user_id=str(data["owner_user_id"]),
            filename=data["filename"],
            path=data["path"],
            size=int(data.get("size", 0)),
            mime_type=data.get("mime_type", "application/octet-stream"),
            document_type=data.get("document_type", "other"),
            created_at=self._deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
        )

    def _serialize_step(self, step: WorkflowStep) -> dict:
        return {
            "id": step.id,
            "step_number": step.step_number,
            "step_type": step.step_type,
            "description": step.description,
            "tool_name": step.tool_name,
            "tool_parameters": step.tool_parameters,
            "expected_output_format": step.expected_output_format,
            "requires_confirmation": step.requires_confirmation,
            "status": step.status,
            "result": step.result,
            "error_message": step.error_message,
            "email_details": step.email_details,
            "completed_at": self._serialize_datetime(step.completed_at),
            "retry_group": step.retry_group,
            "decision_kind": step.decision_kind,
        }

    def _deserialize_step(self, data: dict) -> WorkflowStep:
        return WorkflowStep(
            id=str(data.get("id") or uuid.uuid4()),
            step_number=int(data["step_number"]),
            step_type=data["step_type"],
            description=data.get("description", ""),
            tool_name=data.get("tool_name"),
            tool_parameters=data.get("tool_parameters") or {},
            expected_output_format=data.get("expected_output_format"),
            requires_confirmation=data.get("requires_confirmation", False),
            status=data.get("status", "pending"),
            result=data.get("result"),
            error_message=data.get("error_message"),
            email_details=data.get("email_details"),
            completed_at=self._deserialize_datetime(data.get("completed_at")),
            retry_group=data.get("retry_group"),
            decision_kind=data.get("decision_kind"),
        )

    def _serialize_workflow(self, wf: Workflow) -> dict:
        return {
            "id": wf.id,
            "session_id": wf.session_id,
            "user_intent": wf.user_intent,
            "user_id": wf.user_id,
            "status": wf.status,
            "current_step": wf.current_step,
            "steps": [self._serialize_step(s) for s in wf.ordered_steps()],
            "is_scheduled": wf.is_scheduled,
            "schedule_type": wf.schedule_type,
            "schedule_config": wf.schedule_config,
            "next_run_at": self._serialize_datetime(wf.next_run_at),
            "last_run_at": self._serialize_datetime(wf.last_run_at),
            "execution_count": wf.execution_count,
            "max_executions": wf.max_executions,
            "requires_approval": wf.requires_approval,
            "approved_at": self._serialize_datetime(wf.approved_at),
            "approved_by": wf.approved_by,
            "user_interaction_message": wf.user_interaction_message,
            "user_interaction_required": wf.user_interaction_required,
            "is_template": wf.is_template,
            "template_name": wf.template_name,
            "created_at": self._serialize_datetime(wf.created_at),
            "completed_at": self._serialize_datetime(wf.completed_at),
        }

    def _deserialize_workflow(self, data: dict) -> Workflow:
        return Workflow(
            id=str(data["id"]),
            session_id=data["session_id"],
            user_intent=data.get("user_intent", ""),
            user_id=data.get("user_id"),
            status=data.get("status", "draft"),
            current_step=data.get("current_step"),
            steps=[self._deserialize_step(s) for s in data.get("steps", [])],
            is_scheduled=data.get("is_scheduled", False),
            schedule_type=data.get("schedule_type"),
            schedule_config=data.get("schedule_config"),
            next_run_at=self._deserialize_datetime(data.get("next_run_at")),
            last_run_at=self._deserialize_datetime(data.get("last_run_at")),
            execution_count=data.get("execution_count", 0),
            max_executions=data.get("max_executions"),
            requires_approval=data.get("requires_approval", False),
            approved_at=self._deserialize_datetime(data.get("approved_at")),
            approved_by=data.get("approved_by"),
            user_interaction_message=data.get("user_interaction_message"),
            user_interaction_required=data.get("user_interaction_required"),
            is_template=data.get("is_template", False),
            template_name=data.get("template_name"),
            created_at=self._deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
            completed_at=self._deserialize_datetime(data.get("completed_at")),
        )

    def _serialize_execution(self, execution: WorkflowExecution) -> dict:
        return {
            "id": execution.id,
            "workflow_id": execution.workflow_id,
            "execution_number": execution.execution_number,
            "status": execution.status,
            "step_results": execution.step_results,
            "context": execution.context,
            "error_message": execution.error_message,
            "started_at": self._serialize_datetime(execution.started_at),
            "completed_at": self._serialize_datetime(execution.completed_at),
            "duration_seconds": execution.duration_seconds,
        }

    def _deserialize_execution(self, data: dict) -> WorkflowExecution:
        return WorkflowExecution(
            id=str(data["id"]),
            workflow_id=str(data["workflow_id"]),
            execution_number=int(data["execution_number"]),
            status=data.get("status", "running"),
            step_results=data.get("step_results") or {},
            context=data.get("context") or {},
            error_message=data.get("error_message"),
            started_at=self._deserialize_datetime(data.get("started_at")) or datetime.utcnow(),
            completed_at=self._deserialize_datetime(data.get("completed_at")),
            duration_seconds=data.get("duration_seconds"),
        )

    def _serialize_status(self, status: AgentStatus) -> dict:
        return {
            "id": status.id,
            "session_id": status.session_id,
            "message": status.message,
            "created_at": self._serialize_datetime(status.created_at),
        }

    def _deserialize_status(self, data: dict) -> AgentStatus:
        return AgentStatus(
            id=str(data["id"]),
            session_id=data["session_id"],
            message=data["message"],
            created_at=self._deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
        )


__all__ = ["MemoryStore"]

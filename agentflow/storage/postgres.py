from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        external_token_expires_at TIMESTAMP,
        meta JSONB,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_document (
        id TEXT PRIMARY KEY,
        owner_user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        filename TEXT NOT NULL,
        path TEXT NOT NULL,
        size BIGINT NOT NULL DEFAULT 0,
        mime_type TEXT NOT NULL,
        document_type TEXT NOT NULL DEFAULT 'other',
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        user_intent TEXT NOT NULL,
        user_id TEXT,
        status TEXT NOT NULL,
        current_step INTEGER,
        is_scheduled BOOLEAN NOT NULL DEFAULT FALSE,
        schedule_type TEXT,
        schedule_config JSONB,
        next_run_at TIMESTAMP,
        last_run_at TIMESTAMP,
        execution_count INTEGER NOT NULL DEFAULT 0,
        max_executions INTEGER,
        requires_approval BOOLEAN NOT NULL DEFAULT FALSE,
        approved_at TIMESTAMP,
        approved_by TEXT,
        user_interaction_message TEXT,
        user_interaction_required JSONB,
        is_template BOOLEAN NOT NULL DEFAULT FALSE,
        template_name TEXT,
        created_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_session_idx ON workflow (session_id)",
    "CREATE INDEX IF NOT EXISTS workflow_due_idx ON workflow (next_run_at) WHERE is_scheduled",
    """
    CREATE TABLE IF NOT EXISTS workflow_step (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL REFERENCES workflow(id) ON DELETE CASCADE,
        step_number INTEGER NOT NULL,
        step_type TEXT NOT NULL,
        description TEXT NOT NULL,
        tool_name TEXT,
        tool_parameters JSONB,
        expected_output_format JSONB,
        requires_confirmation BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL,
        result JSONB,
        error_message TEXT,
        email_details JSONB,
        completed_at TIMESTAMP,
        retry_group TEXT,
        decision_kind TEXT,
        UNIQUE (workflow_id, step_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_execution (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL REFERENCES workflow(id) ON DELETE CASCADE,
        execution_number INTEGER NOT NULL,
        status TEXT NOT NULL,
        step_results JSONB,
        context JSONB,
        error_message TEXT,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        duration_seconds DOUBLE PRECISION,
        UNIQUE (workflow_id, execution_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_status (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        message TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS agent_status_session_idx ON agent_status (session_id, created_at)",
]

_WORKFLOW_COLUMNS = (
    "id, session_id, user_intent, user_id, status, current_step, is_scheduled, schedule_type, "
    "schedule_config, next_run_at, last_run_at, execution_count, max_executions, requires_approval, "
    "approved_at, approved_by, user_interaction_message, user_interaction_required, is_template, "
    "template_name, created_at, completed_at"
)

_STEP_COLUMNS = (
    "id, workflow_id, step_number, step_type, description, tool_name, tool_parameters, "
    "expected_output_format, requires_confirmation, status, result, error_message, email_details, "
    "completed_at, retry_group, decision_kind"
)


def _json(value: Any) -> Optional[str]:
    return json.dumps(value, ensure_ascii=False, default=str) if value is not None else None


class PostgresStore:
    """Postgres-backed store; each ``save_workflow`` is one transaction."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # Users and documents

    def create_user(self, email: str, *, name: str | None = None, user_id: str | None = None) -> User:
        user = User(id=user_id or str(uuid.uuid4()), email=email, name=name)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_user (id, email, name, is_active, created_at) VALUES (%s, %s, %s, %s, %s)",
                    (user.id, user.email, user.name, user.is_active, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        if not row:
            return None
        return User(
            id=row["id"],
            email=row["email"],
            name=row.get("name"),
            created_at=row["created_at"],
            is_active=row.get("is_active", True),
            external_token_expires_at=row.get("external_token_expires_at"),
            meta=row.get("meta"),
        )

    def save_user(self, user: User) -> User:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET email = %s, name = %s, is_active = %s,
                    external_token_expires_at = %s, meta = %s
                WHERE id = %s
                """,
                (
                    user.email,
                    user.name,
                    user.is_active,
                    user.external_token_expires_at,
                    _json(user.meta),
                    user.id,
                ),
            )
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
        doc = UserDocument(
            id=document_id or str(uuid.uuid4()),
            owner_user_id=owner_user_id,
            filename=filename,
            path=path,
            size=size,
            mime_type=mime_type,
            document_type=document_type,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_document (id, owner_user_id, filename, path, size, mime_type, document_type, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        doc.id,
                        doc.owner_user_id,
                        doc.filename,
                        doc.path,
                        doc.size,
                        doc.mime_type,
                        doc.document_type,
                        doc.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("document owner not found", {"owner_user_id": owner_user_id})
        return doc

    def get_document(self, document_id: str) -> Optional[UserDocument]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_document WHERE id = %s", (str(document_id),)
            ).fetchone()
        return self._document_from_row(row) if row else None

    def list_documents(self, owner_user_id: str) -> List[UserDocument]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_document WHERE owner_user_id = %s ORDER BY created_at",
                (owner_user_id,),
            ).fetchall()
        return [self._document_from_row(r) for r in rows]

    @staticmethod
    def _document_from_row(row: dict) -> UserDocument:
        return UserDocument(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            filename=row["filename"],
            path=row["path"],
            size=row.get("size") or 0,
            mime_type=row["mime_type"],
            document_type=row.get("document_type", "other"),
            created_at=row["created_at"],
        )

    # Workflows

    def _workflow_params(self, wf: Workflow) -> tuple:
        return (
            wf.id,
            wf.session_id,
            wf.user_intent,
            wf.user_id,
            wf.status,
            wf.current_step,
            wf.is_scheduled,
            wf.schedule_type,
            _json(wf.schedule_config),
            wf.next_run_at,
            wf.last_run_at,
            wf.execution_count,
            wf.max_executions,
            wf.requires_approval,
            wf.approved_at,
            wf.approved_by,
            wf.user_interaction_message,
            _json(wf.user_interaction_required),
            wf.is_template,
            wf.template_name,
            wf.created_at,
            wf.completed_at,
        )

    @staticmethod
    def _step_params(workflow_id: str, step: WorkflowStep) -> tuple:
        return (
            step.id,
            workflow_id,
            step.step_number,
            step.step_type,
            step.description,
            step.tool_name,
            _json(step.tool_parameters),
            _json(step.expected_output_format),
            step.requires_confirmation,
            step.status,
            _json(step.result),
            step.error_message,
            _json(step.email_details),
            step.completed_at,
            step.retry_group,
            step.decision_kind,
        )

    def _write_workflow(self, conn, wf: Workflow) -> None:
        placeholders = ", ".join(["%s"] * 22)
        updates = ", ".join(
            f"{col.strip()} = EXCLUDED.{col.strip()}"
            for col in _WORKFLOW_COLUMNS.split(",")
            if col.strip() not in ("id", "status")
        )
        # A cancel written by another worker survives the running executor's saves
        updates += (
            ", status = CASE WHEN workflow.status = 'cancelled' AND EXCLUDED.status = 'running' "
            "THEN workflow.status ELSE EXCLUDED.status END"
        )
        conn.execute(
            f"INSERT INTO workflow ({_WORKFLOW_COLUMNS}) VALUES ({placeholders}) "
            f"ON CONFLICT (id) DO UPDATE SET {updates}",
            self._workflow_params(wf),
        )
        step_placeholders = ", ".join(["%s"] * 16)
        step_updates = ", ".join(
            f"{col.strip()} = EXCLUDED.{col.strip()}"
            for col in _STEP_COLUMNS.split(",")
            if col.strip() not in ("id", "workflow_id")
        )
        for step in wf.ordered_steps():
            conn.execute(
                f"INSERT INTO workflow_step ({_STEP_COLUMNS}) VALUES ({step_placeholders}) "
                f"ON CONFLICT (id) DO UPDATE SET {step_updates}",
                self._step_params(wf.id, step),
            )
        conn.execute(
            "DELETE FROM workflow_step WHERE workflow_id = %s AND NOT (id = ANY(%s))",
            (wf.id, [s.id for s in wf.steps]),
        )

    def create_workflow(self, workflow: Workflow) -> Workflow:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    exists = conn.execute(
                        "SELECT 1 FROM workflow WHERE id = %s", (workflow.id,)
                    ).fetchone()
                    if exists:
                        raise ConstraintViolation("workflow already exists", {"workflow_id": workflow.id})
                    self._write_workflow(conn, workflow)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "step numbers must be unique within a workflow", {"workflow_id": workflow.id}
            )
        return workflow

    def save_workflow(self, workflow: Workflow) -> Workflow:
        with self._connect() as conn:
            with conn.transaction():
                self._write_workflow(conn, workflow)
        return workflow

    def _load_workflows(self, conn, rows: Iterable[dict]) -> List[Workflow]:
        rows = list(rows)
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        step_rows = conn.execute(
            f"SELECT {_STEP_COLUMNS} FROM workflow_step WHERE workflow_id = ANY(%s) ORDER BY step_number",
            (ids,),
        ).fetchall()
        steps_by_workflow: dict[str, List[WorkflowStep]] = {}
        for row in step_rows:
            steps_by_workflow.setdefault(row["workflow_id"], []).append(self._step_from_row(row))
        return [self._workflow_from_row(r, steps_by_workflow.get(r["id"], [])) for r in rows]

    @staticmethod
    def _step_from_row(row: dict) -> WorkflowStep:
        return WorkflowStep(
            id=row["id"],
            step_number=row["step_number"],
            step_type=row["step_type"],
            description=row["description"],
            tool_name=row.get("tool_name"),
            tool_parameters=row.get("tool_parameters") or {},
            expected_output_format=row.get("expected_output_format"),
            requires_confirmation=row.get("requires_confirmation", False),
            status=row["status"],
            result=row.get("result"),
            error_message=row.get("error_message"),
            email_details=row.get("email_details"),
            completed_at=row.get("completed_at"),
            retry_group=row.get("retry_group"),
            decision_kind=row.get("decision_kind"),
        )

    @staticmethod
    def _workflow_from_row(row: dict, steps: List[WorkflowStep]) -> Workflow:
        return Workflow(
            id=row["id"],
            session_id=row["session_id"],
            user_intent=row["user_intent"],
            user_id=row.get("user_id"),
            status=row["status"],
            current_step=row.get("current_step"),
            steps=steps,
            is_scheduled=row.get("is_scheduled", False),
            schedule_type=row.get("schedule_type"),
            schedule_config=row.get("schedule_config"),
            next_run_at=row.get("next_run_at"),
            last_run_at=row.get("last_run_at"),
            execution_count=row.get("execution_count") or 0,
            max_executions=row.get("max_executions"),
            requires_approval=row.get("requires_approval", False),
            approved_at=row.get("approved_at"),
            approved_by=row.get("approved_by"),
            user_interaction_message=row.get("user_interaction_message"),
            user_interaction_required=row.get("user_interaction_required"),
            is_template=row.get("is_template", False),
            template_name=row.get("template_name"),
            created_at=row["created_at"],
            completed_at=row.get("completed_at"),
        )

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflow WHERE id = %s", (workflow_id,)
            ).fetchall()
            workflows = self._load_workflows(conn, rows)
        return workflows[0] if workflows else None

    def list_workflows_for_session(
        self, session_id: str, *, statuses: Optional[Iterable[str]] = None
    ) -> List[Workflow]:
        query = f"SELECT {_WORKFLOW_COLUMNS} FROM workflow WHERE session_id = %s"
        params: list[Any] = [session_id]
        if statuses:
            query += " AND status = ANY(%s)"
            params.append(list(statuses))
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            return self._load_workflows(conn, rows)

    def list_due_workflows(self, now: datetime, limit: int = 10) -> List[Workflow]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_WORKFLOW_COLUMNS} FROM workflow
                WHERE is_scheduled AND next_run_at IS NOT NULL AND next_run_at <= %s
                  AND (max_executions IS NULL OR execution_count < max_executions)
                ORDER BY next_run_at ASC
                LIMIT %s
                """,
                (now, limit),
            ).fetchall()
            return self._load_workflows(conn, rows)

    def list_interrupted_workflows(self, started_before: datetime) -> List[Workflow]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_WORKFLOW_COLUMNS} FROM workflow
                WHERE status = 'running'
                  AND NOT EXISTS (
                    SELECT 1 FROM workflow_execution e
                    WHERE e.workflow_id = workflow.id AND e.status = 'running' AND e.started_at > %s
                  )
                ORDER BY created_at ASC
                """,
                (started_before,),
            ).fetchall()
            return self._load_workflows(conn, rows)

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM workflow WHERE id = %s", (workflow_id,))
            return cur.rowcount > 0

    # Executions

    def create_execution(self, workflow_id: str) -> WorkflowExecution:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT COALESCE(MAX(execution_number), 0) AS n FROM workflow_execution WHERE workflow_id = %s",
                    (workflow_id,),
                ).fetchone()
                execution = WorkflowExecution.start(workflow_id, int(row["n"]) + 1)
                self._write_execution(conn, execution)
        return execution

    def _write_execution(self, conn, execution: WorkflowExecution) -> None:
        conn.execute(
            """
            INSERT INTO workflow_execution (id, workflow_id, execution_number, status, step_results, context,
                error_message, started_at, completed_at, duration_seconds)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status,
                step_results = EXCLUDED.step_results, context = EXCLUDED.context,
                error_message = EXCLUDED.error_message, completed_at = EXCLUDED.completed_at,
                duration_seconds = EXCLUDED.duration_seconds
            """,
            (
                execution.id,
                execution.workflow_id,
                execution.execution_number,
                execution.status,
                _json(execution.step_results),
                _json(execution.context),
                execution.error_message,
                execution.started_at,
                execution.completed_at,
                execution.duration_seconds,
            ),
        )

    def save_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._connect() as conn:
            self._write_execution(conn, execution)
        return execution

    def list_executions(self, workflow_id: str) -> List[WorkflowExecution]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workflow_execution WHERE workflow_id = %s ORDER BY execution_number",
                (workflow_id,),
            ).fetchall()
        return [
            WorkflowExecution(
                id=r["id"],
                workflow_id=r["workflow_id"],
                execution_number=r["execution_number"],
                status=r["status"],
                step_results=r.get("step_results") or {},
                context=r.get("context") or {},
                error_message=r.get("error_message"),
                started_at=r["started_at"],
                completed_at=r.get("completed_at"),
                duration_seconds=r.get("duration_seconds"),
            )
            for r in rows
        ]

    # Status lines

    def add_status(self, session_id: str, message: str) -> AgentStatus:
        status = AgentStatus.new(session_id, message)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO agent_status (id, session_id, message, created_at) VALUES (%s, %s, %s, %s)",
                (status.id, status.session_id, status.message, status.created_at),
            )
        return status

    def list_statuses(self, session_id: str, since: Optional[datetime] = None) -> List[AgentStatus]:
        query = "SELECT * FROM agent_status WHERE session_id = %s"
        params: list[Any] = [session_id]
        if since is not None:
            query += " AND created_at > %s"
            params.append(since)
        query += " ORDER BY created_at ASC"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [
            AgentStatus(
                id=r["id"], session_id=r["session_id"], message=r["message"], created_at=r["created_at"]
            )
            for r in rows
        ]

    def clear_statuses(self, session_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM agent_status WHERE session_id = %s", (session_id,))
            return cur.rowcount


__all__ = ["PostgresStore"]

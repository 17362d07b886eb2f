from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agentflow.logging import (
    bind_workflow_context,
    clear_workflow_context,
    get_logger,
    sanitize_error_message,
)
from agentflow.service.agent import AgentCaller
from agentflow.service.context import ContextResolver, build_context
from agentflow.service.decision import (
    SmartDecisionEvaluator,
    is_final_selection_decision,
    is_job_search_decision,
)
from agentflow.service.errors import (
    AgentExhausted,
    ConflictError,
    ContactsNotFound,
    MissingUserContext,
    NotExecutable,
    NotFoundError,
    ServiceError,
    UnresolvedPlaceholderError,
    ValidationError,
)
from agentflow.service.extraction import build_structured_prompt, extract_structured
from agentflow.service.planner import WorkflowPlanner
from agentflow.service.retry import is_transient_error
from agentflow.service.skip import SkipPolicy
from agentflow.service.status import StatusChannel
from agentflow.service.tools import EMAIL_TOOLS, OPTIONAL_TOOLS, SEARCH_VARIANTS_TOOL, ToolInvoker
from agentflow.storage.models import (
    CANCELLABLE_STATUSES,
    User,
    Workflow,
    WorkflowExecution,
    WorkflowStep,
)

logger = get_logger(__name__)

# Failures that re-running the same step cannot fix, whatever their message says
NON_RECOVERABLE_ERRORS = (
    AgentExhausted,
    ContactsNotFound,
    MissingUserContext,
    NotExecutable,
    ValidationError,
)

EMPTY_RESULT_HINT = "\n\nWICHTIG: Vorherige Versuche waren leer. Bitte gib KONKRETE Werte zurück!"

_TYPE_DEFAULTS: Dict[str, Any] = {
    "string": "",
    "integer": 0,
    "number": 0,
    "boolean": False,
    "array": [],
}


def is_empty_result(result: Any) -> bool:
    if not isinstance(result, dict):
        return False
    return all(value is None or value == "" for value in result.values())


def placeholder_result(step: WorkflowStep) -> Dict[str, Any]:
    """Stand-in result for a skipped optional step, shaped by its output format."""
    fmt = step.expected_output_format or {}
    fields = fmt.get("fields") if isinstance(fmt, dict) else None
    if not isinstance(fields, dict) or not fields:
        return {"skipped": True}
    return {name: _TYPE_DEFAULTS.get(str(kind), None) for name, kind in fields.items()}


def is_recoverable(exc: BaseException) -> bool:
    """Transient failures only; a wrapped tool error is judged by its cause."""
    if isinstance(exc, NON_RECOVERABLE_ERRORS):
        return False
    cause = exc.__cause__
    return is_transient_error(exc) or (cause is not None and is_transient_error(cause))


def _dump_context(context: Dict[str, Any]) -> str:
    return json.dumps(context, ensure_ascii=False, indent=2, default=str)


class WorkflowExecutor:
    """Runs a workflow's steps in order and persists progress after every step."""

    def __init__(
        self,
        store: Any,
        *,
        status: StatusChannel,
        agent: AgentCaller,
        tools: ToolInvoker,
        decisions: SmartDecisionEvaluator,
        resolver: Optional[ContextResolver] = None,
        skip_policy: Optional[SkipPolicy] = None,
        recovery_attempts: int = 2,
        recovery_backoff_seconds: float = 2.0,
        max_failed_steps: int = 3,
        interrupted_after_seconds: float = 3600.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.status = status
        self.agent = agent
        self.tools = tools
        self.decisions = decisions
        self.resolver = resolver or ContextResolver()
        self.skip_policy = skip_policy or SkipPolicy()
        self.recovery_attempts = max(1, recovery_attempts)
        self.recovery_backoff_seconds = recovery_backoff_seconds
        self.max_failed_steps = max_failed_steps
        self.interrupted_after_seconds = interrupted_after_seconds
        self.sleep = sleep
        # Workflows this process is executing right now
        self._active: set = set()

    # Context

    def build_context(self, workflow: Workflow) -> Dict[str, Any]:
        """Execution context rebuilt from persisted results of finished steps."""
        results = {
            step.step_number: step.result
            for step in workflow.steps
            if step.status in ("completed", "skipped")
        }
        context = build_context(results)
        for step in workflow.ordered_steps():
            if step.tool_name != SEARCH_VARIANTS_TOOL or not isinstance(step.result, dict):
                continue
            variants = step.result.get("variants")
            if isinstance(variants, list):
                context["search_variants_list"] = variants
                context["search_variants_count"] = len(variants)
        return context

    # Run

    def _load(self, workflow_id: str) -> Workflow:
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("workflow not found", detail={"workflow_id": workflow_id})
        return workflow

    def _cancel_requested(self, workflow: Workflow) -> bool:
        current = self.store.get_workflow(workflow.id)
        return current is not None and current.status == "cancelled"

    async def execute(self, workflow_id: str, acting_user: Optional[User] = None) -> Workflow:
        """Start or resume a run; returns the workflow in its resulting state.

        Step failures are recorded on the workflow, not raised. Raises
        ``NotExecutable`` when the workflow's status or approval forbids a run.
        """
        workflow = self._load(workflow_id)
        if not workflow.can_execute():
            raise NotExecutable(workflow.id, workflow.status)

        session_id = workflow.session_id
        bind_workflow_context(workflow.id, session_id)
        self.agent.reset(session_id)
        self._active.add(workflow.id)
        try:
            workflow.status = "running"
            self.store.save_workflow(workflow)
            execution = self.store.create_execution(workflow.id)
            logger.info(
                "workflow_run_started",
                execution_number=execution.execution_number,
                has_user=acting_user is not None,
            )
            await self._run(workflow, execution, acting_user)
            return workflow
        finally:
            self._active.discard(workflow.id)
            self.agent.reset(session_id)
            clear_workflow_context()

    def recover_interrupted(self, now: Optional[datetime] = None) -> List[Workflow]:
        """Make runs left ``running`` by a dead process resumable.

        A workflow counts as interrupted when no run of it is active in this
        process and its latest run started more than
        ``interrupted_after_seconds`` ago. Steps caught mid-run go back to
        ``pending``; finished steps keep their results.
        """
        cutoff = (now or datetime.utcnow()) - timedelta(seconds=self.interrupted_after_seconds)
        recovered = []
        for workflow in self.store.list_interrupted_workflows(cutoff):
            if workflow.id in self._active:
                continue
            reset_steps = workflow.recover_interrupted()
            self.store.save_workflow(workflow)
            for execution in self.store.list_executions(workflow.id):
                if execution.status == "running":
                    execution.fail("interrupted")
                    self.store.save_execution(execution)
            self.status.add_status(workflow.session_id, "♻️ Unterbrochener Workflow kann fortgesetzt werden")
            logger.warning("workflow_run_interrupted", workflow_id=workflow.id, reset_steps=reset_steps)
            recovered.append(workflow)
        return recovered

    async def _run(self, workflow: Workflow, execution: WorkflowExecution, acting_user: Optional[User]) -> None:
        session_id = workflow.session_id
        context = self.build_context(workflow)
        failed_steps = 0

        for step in workflow.ordered_steps():
            if step.is_settled:
                continue
            if self._cancel_requested(workflow):
                self._finish_cancelled(workflow, execution)
                return
            if step.status == "pending_confirmation":
                self._pause(workflow, step, execution)
                return

            if self.skip_policy.should_skip(step, context):
                result = self.skip_policy.copy_last_successful(step, context)
                step.skip(result)
                context[f"step_{step.step_number}"] = {"result": result}
                workflow.current_step = step.step_number
                self.store.save_workflow(workflow)
                self.status.add_status(session_id, "⏭️ Step %d übersprungen" % step.step_number)
                logger.info("workflow_step_skipped", step=step.step_number)
                continue

            step.mark_running()
            workflow.current_step = step.step_number
            self.store.save_workflow(workflow)
            self.status.add_status(
                session_id, "⚙️ Führe Step %d aus: %s" % (step.step_number, step.description)
            )

            try:
                result = await self._run_with_recovery(step, context, session_id, acting_user)
                if is_empty_result(result):
                    logger.warning("workflow_step_empty_result", step=step.step_number)
                    result = await self._dispatch(
                        step,
                        context,
                        session_id,
                        acting_user,
                        description=step.description + EMPTY_RESULT_HINT,
                    )
            except Exception as exc:
                failed_steps += 1
                logger.error(
                    "workflow_step_failed",
                    step=step.step_number,
                    step_type=step.step_type,
                    tool=step.tool_name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if failed_steps < self.max_failed_steps and step.tool_name in OPTIONAL_TOOLS:
                    placeholder = placeholder_result(step)
                    step.skip(placeholder, reason="Skipped due to error: %s" % exc)
                    context[f"step_{step.step_number}"] = {"result": placeholder}
                    self.store.save_workflow(workflow)
                    continue
                self._fail(workflow, step, execution, exc)
                return

            if self._needs_confirmation(step, result):
                step.await_confirmation(result.get("email_details") or {}, result)
                self._pause(workflow, step, execution)
                return

            step.complete(result)
            context[f"step_{step.step_number}"] = {"result": result}
            execution.step_results[str(step.step_number)] = result
            self.store.save_workflow(workflow)
            self.status.add_status(session_id, "✅ Step %d abgeschlossen" % step.step_number)

        if self._cancel_requested(workflow):
            self._finish_cancelled(workflow, execution)
            return
        workflow.status = "completed"
        workflow.completed_at = datetime.utcnow()
        self.store.save_workflow(workflow)
        execution.context = context
        execution.complete()
        self.store.save_execution(execution)
        self.status.add_status(session_id, "✅ Workflow abgeschlossen")
        logger.info("workflow_run_completed", duration_seconds=execution.duration_seconds)

    @staticmethod
    def _needs_confirmation(step: WorkflowStep, result: Any) -> bool:
        return (
            step.tool_name in EMAIL_TOOLS
            and isinstance(result, dict)
            and result.get("status") == "prepared"
        )

    def _pause(self, workflow: Workflow, step: WorkflowStep, execution: WorkflowExecution) -> None:
        workflow.status = "waiting_user_input"
        workflow.current_step = step.step_number
        self.store.save_workflow(workflow)
        execution.pause_for_user_input()
        self.store.save_execution(execution)
        logger.info("workflow_waiting_for_confirmation", step=step.step_number)

    def _fail(
        self,
        workflow: Workflow,
        step: WorkflowStep,
        execution: WorkflowExecution,
        exc: BaseException,
    ) -> None:
        step.fail(str(exc))
        if self._cancel_requested(workflow):
            self._finish_cancelled(workflow, execution)
            return
        workflow.status = "failed"
        workflow.current_step = step.step_number
        self.store.save_workflow(workflow)
        execution.fail(str(exc))
        self.store.save_execution(execution)
        self.status.add_status(
            workflow.session_id,
            "❌ Workflow fehlgeschlagen bei Step %d: %s"
            % (step.step_number, sanitize_error_message(str(exc))),
        )

    def _finish_cancelled(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        workflow.status = "cancelled"
        for step in workflow.steps:
            if step.status in ("pending", "pending_confirmation"):
                step.cancel()
        self.store.save_workflow(workflow)
        execution.cancel()
        self.store.save_execution(execution)
        self.status.add_status(workflow.session_id, "⏹️ Workflow abgebrochen")
        logger.info("workflow_run_cancelled", current_step=workflow.current_step)

    # Steps

    async def _run_with_recovery(
        self,
        step: WorkflowStep,
        context: Dict[str, Any],
        session_id: str,
        acting_user: Optional[User],
    ) -> Any:
        attempt = 1
        while True:
            try:
                return await self._dispatch(step, context, session_id, acting_user)
            except Exception as exc:
                if attempt >= self.recovery_attempts or not is_recoverable(exc):
                    raise
                logger.warning(
                    "workflow_step_retry",
                    step=step.step_number,
                    attempt=attempt,
                    error=str(exc),
                )
                await self.sleep(self.recovery_backoff_seconds * attempt)
                attempt += 1

    async def _dispatch(
        self,
        step: WorkflowStep,
        context: Dict[str, Any],
        session_id: str,
        acting_user: Optional[User],
        *,
        description: Optional[str] = None,
    ) -> Any:
        text = self.resolver.resolve_string(description or step.description or "", context)

        if step.step_type == "tool_call":
            parameters = self.resolver.resolve(step.tool_parameters or {}, context)
            unresolved = self.resolver.find_unresolved_placeholders(parameters)
            if unresolved:
                logger.error(
                    "workflow_unresolved_placeholders",
                    step=step.step_number,
                    unresolved=unresolved,
                    available_context_keys=list(context.keys()),
                )
                raise UnresolvedPlaceholderError(unresolved, list(context.keys()))
            return await self.tools.invoke(
                step.tool_name or "",
                parameters,
                context,
                session_id=session_id,
                acting_user=acting_user,
            )

        if step.step_type == "analysis":
            return await self._analyse(step, text, context, session_id, acting_user)

        if step.step_type == "decision":
            if is_final_selection_decision(step):
                result = self.decisions.select_final(context, step.step_number)
                self.status.add_status(session_id, "✅ Step %d: Bester Job ausgewählt" % step.step_number)
                return result
            if is_job_search_decision(step):
                return self.decisions.evaluate_job_search(step, context, session_id)
            if step.output_fields:
                return await self._analyse(step, text, context, session_id, acting_user)
            prompt = "Treffe folgende Entscheidung: %s. Basierend auf: %s" % (
                text,
                json.dumps(context, ensure_ascii=False, default=str),
            )
            content = await self.agent.call(prompt, session_id=session_id, acting_user=acting_user)
            return {"decision": content}

        if step.step_type == "notification":
            self.status.add_status(session_id, "📧 " + text)
            return {"notification_sent": True, "message": text}

        raise ValidationError(f"unknown step type: {step.step_type}")

    async def _analyse(
        self,
        step: WorkflowStep,
        text: str,
        context: Dict[str, Any],
        session_id: str,
        acting_user: Optional[User],
    ) -> Dict[str, Any]:
        fields = step.output_fields
        if not fields:
            prompt = "Analysiere folgende Daten und %s: %s" % (text, _dump_context(context))
            content = await self.agent.call(prompt, session_id=session_id, acting_user=acting_user)
            return {"analysis": content}

        prompt = build_structured_prompt(
            "Analysiere die folgenden Daten und %s." % text, fields
        ) + "\n\nDaten zur Analyse:\n" + _dump_context(context)
        content = await self.agent.call(prompt, session_id=session_id, acting_user=acting_user)
        structured = extract_structured(content, fields)
        logger.info(
            "structured_analysis_completed",
            step=step.step_number,
            extracted_fields=list(structured.keys()),
        )
        return structured


class WorkflowEngine:
    """Entry points used by the HTTP layer, the scheduler and chat handlers."""

    def __init__(
        self,
        store: Any,
        *,
        planner: WorkflowPlanner,
        executor: WorkflowExecutor,
        tools: ToolInvoker,
        status: StatusChannel,
    ) -> None:
        self.store = store
        self.planner = planner
        self.executor = executor
        self.tools = tools
        self.status = status

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("workflow not found", detail={"workflow_id": workflow_id})
        return workflow

    async def create_workflow_from_intent(
        self, intent: str, session_id: str, acting_user: Optional[User] = None
    ) -> Workflow:
        workflow = await self.planner.create_plan(intent, session_id, acting_user)
        self.store.create_workflow(workflow)
        self.status.add_status(
            session_id, "📋 Workflow erstellt mit %d Schritten" % len(workflow.steps)
        )
        return workflow

    async def execute_workflow(self, workflow_id: str, acting_user: Optional[User] = None) -> Workflow:
        return await self.executor.execute(workflow_id, acting_user)

    async def confirm_step(
        self,
        workflow_id: str,
        confirmed: bool,
        acting_user: Optional[User] = None,
    ) -> Workflow:
        """Send (or reject) the email awaiting confirmation, then continue the run."""
        workflow = self.get_workflow(workflow_id)
        step = next(
            (s for s in workflow.ordered_steps() if s.status == "pending_confirmation"),
            None,
        )
        if workflow.status != "waiting_user_input" or step is None:
            raise ConflictError(
                "no step is waiting for confirmation",
                detail={"workflow_id": workflow_id, "status": workflow.status},
            )

        if not confirmed:
            step.cancel()
            workflow.status = "cancelled"
            self.store.save_workflow(workflow)
            self.status.add_status(workflow.session_id, "❌ Schritt abgelehnt")
            logger.info("workflow_step_rejected", workflow_id=workflow_id, step=step.step_number)
            return workflow

        try:
            result = await self.tools.send_prepared_email(
                step.email_details,
                session_id=workflow.session_id,
                acting_user=acting_user,
            )
        except ServiceError as exc:
            step.fail(str(exc))
            workflow.status = "failed"
            self.store.save_workflow(workflow)
            self.status.add_status(
                workflow.session_id,
                "❌ E-Mail konnte nicht versendet werden: %s" % sanitize_error_message(exc.message),
            )
            logger.error(
                "workflow_email_send_failed",
                workflow_id=workflow_id,
                step=step.step_number,
                error=str(exc),
            )
            raise

        step.complete(result)
        self.store.save_workflow(workflow)
        return await self.executor.execute(workflow.id, acting_user)

    def cancel_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.get_workflow(workflow_id)
        if workflow.status not in CANCELLABLE_STATUSES:
            raise ConflictError(
                "workflow cannot be cancelled",
                detail={"workflow_id": workflow_id, "status": workflow.status},
            )
        was_running = workflow.status == "running"
        workflow.status = "cancelled"
        if not was_running:
            for step in workflow.steps:
                if step.status in ("pending", "pending_confirmation"):
                    step.cancel()
            self.status.add_status(workflow.session_id, "⏹️ Workflow abgebrochen")
        self.store.save_workflow(workflow)
        logger.info("workflow_cancel_requested", workflow_id=workflow_id, was_running=was_running)
        return workflow

    def approve_workflow(self, workflow_id: str, user_id: str) -> Workflow:
        workflow = self.get_workflow(workflow_id)
        if workflow.status != "draft":
            raise ConflictError(
                "only draft workflows can be approved",
                detail={"workflow_id": workflow_id, "status": workflow.status},
            )
        workflow.approve(user_id)
        self.store.save_workflow(workflow)
        return workflow

    def resolve_user_interaction(self, workflow_id: str, resolution: Any) -> Workflow:
        workflow = self.get_workflow(workflow_id)
        if not workflow.has_user_interaction():
            raise ConflictError(
                "workflow is not waiting for user input",
                detail={"workflow_id": workflow_id, "status": workflow.status},
            )
        workflow.resolve_user_interaction(resolution)
        self.store.save_workflow(workflow)
        return workflow

    def schedule_workflow(
        self,
        workflow_id: str,
        schedule_type: str,
        config: Optional[Dict[str, Any]] = None,
        *,
        max_executions: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Workflow:
        workflow = self.get_workflow(workflow_id)
        config = dict(config or {})
        try:
            if schedule_type == "once":
                run_at = config.get("run_at")
                if isinstance(run_at, str):
                    run_at = datetime.fromisoformat(run_at)
                if not isinstance(run_at, datetime):
                    raise ValueError("run_at is required for one-off schedules")
                workflow.schedule_once(run_at)
            elif schedule_type == "hourly":
                workflow.schedule_hourly(int(config.get("minute", 0)), now=now)
            elif schedule_type == "daily":
                workflow.schedule_daily(config.get("time", "12:00"), now=now)
            elif schedule_type == "weekly":
                workflow.schedule_weekly(
                    config.get("day_of_week", "monday"), config.get("time", "12:00"), now=now
                )
            elif schedule_type == "biweekly":
                workflow.schedule_biweekly(
                    config.get("day_of_week", "monday"), config.get("time", "12:00"), now=now
                )
            elif schedule_type == "monthly":
                workflow.schedule_monthly(
                    int(config.get("day_of_month", 1)), config.get("time", "12:00"), now=now
                )
            else:
                raise ValueError(f"unknown schedule type: {schedule_type!r}")
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"schedule_type": schedule_type}) from exc
        workflow.max_executions = max_executions
        self.store.save_workflow(workflow)
        logger.info(
            "workflow_scheduled",
            workflow_id=workflow_id,
            schedule_type=schedule_type,
            next_run_at=workflow.next_run_at.isoformat() if workflow.next_run_at else None,
        )
        return workflow

    def get_workflow_status(self, workflow_id: str) -> Dict[str, Any]:
        workflow = self.get_workflow(workflow_id)
        return {
            "id": workflow.id,
            "session_id": workflow.session_id,
            "status": workflow.status,
            "current_step": workflow.current_step,
            "user_intent": workflow.user_intent,
            "is_scheduled": workflow.is_scheduled,
            "next_run_at": workflow.next_run_at.isoformat() if workflow.next_run_at else None,
            "execution_count": workflow.execution_count,
            "steps": [
                {
                    "step_number": step.step_number,
                    "type": step.step_type,
                    "description": step.description,
                    "tool": step.tool_name,
                    "status": step.status,
                    "requires_confirmation": step.requires_confirmation,
                    "email_details": step.email_details,
                    "result": step.result,
                    "error": step.error_message,
                    "completed_at": step.completed_at.isoformat() if step.completed_at else None,
                }
                for step in workflow.ordered_steps()
            ],
        }

    def active_workflows_for_session(self, session_id: str) -> List[Workflow]:
        return self.store.list_workflows_for_session(
            session_id, statuses=("running", "waiting_user_input")
        )


__all__ = [
    "EMPTY_RESULT_HINT",
    "WorkflowEngine",
    "WorkflowExecutor",
    "is_empty_result",
    "placeholder_result",
]

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from agentflow.logging import get_logger
from agentflow.service.errors import NotExecutable
from agentflow.service.workflow import WorkflowExecutor
from agentflow.storage.models import TERMINAL_WORKFLOW_STATUSES, Workflow

logger = get_logger(__name__)


class Scheduler:
    """Runs scheduled workflows whose next run is due.

    Exclusivity across workers is the job queue's responsibility; one
    scheduler invocation processes its batch sequentially.
    """

    def __init__(self, store: Any, executor: WorkflowExecutor, *, batch_limit: int = 10) -> None:
        self.store = store
        self.executor = executor
        self.batch_limit = batch_limit

    def due_workflows(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> List[Workflow]:
        """Due workflows, oldest ``next_run_at`` first, capped at ``limit``."""
        return self.store.list_due_workflows(now or datetime.utcnow(), limit or self.batch_limit)

    async def run_workflow(self, workflow: Workflow, now: Optional[datetime] = None) -> Workflow:
        if workflow.status in TERMINAL_WORKFLOW_STATUSES and workflow.status != "cancelled":
            workflow.reset_for_run()
            self.store.save_workflow(workflow)
        owner = self.store.get_user(workflow.user_id) if workflow.user_id else None
        try:
            result = await self.executor.execute(workflow.id, owner)
        finally:
            current = self.store.get_workflow(workflow.id) or workflow
            current.mark_executed(now or datetime.utcnow())
            self.store.save_workflow(current)
        return result

    async def run_due(
        self,
        limit: Optional[int] = None,
        *,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        recovered = [] if dry_run else self.executor.recover_interrupted(now)
        due = self.due_workflows(limit, now)
        summary: Dict[str, Any] = {
            "found": len(due),
            "recovered": len(recovered),
            "executed": 0,
            "failed": 0,
            "dry_run": dry_run,
            "workflows": [],
        }
        logger.info("scheduler_run_started", found=len(due), dry_run=dry_run)

        for workflow in due:
            entry = {
                "id": workflow.id,
                "next_run_at": workflow.next_run_at.isoformat() if workflow.next_run_at else None,
                "schedule_type": workflow.schedule_type,
            }
            summary["workflows"].append(entry)
            if dry_run:
                continue
            try:
                finished = await self.run_workflow(workflow, now)
            except NotExecutable as exc:
                summary["failed"] += 1
                entry["status"] = "not_executable"
                logger.warning("scheduled_workflow_not_executable", workflow_id=workflow.id, error=exc.message)
                continue
            entry["status"] = finished.status
            if finished.status == "failed":
                summary["failed"] += 1
            else:
                summary["executed"] += 1

        logger.info(
            "scheduler_run_completed",
            found=summary["found"],
            executed=summary["executed"],
            failed=summary["failed"],
            dry_run=dry_run,
        )
        return summary


__all__ = ["Scheduler"]

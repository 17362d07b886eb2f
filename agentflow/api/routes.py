from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query

from agentflow.api.schemas import (
    ApproveRequest,
    ConfirmRequest,
    CreateWorkflowRequest,
    Envelope,
    ScheduleRequest,
    StatusEntry,
    StatusListResponse,
    UserInteractionRequest,
    WorkflowResponse,
)
from agentflow.logging import get_logger
from agentflow.service.errors import ServiceError
from agentflow.service.runtime import get_runtime
from agentflow.storage.models import User, Workflow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_acting_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> Optional[User]:
    """Resolve the caller from the ``X-User-ID`` header.

    Requests without the header run anonymously; tools that need a user
    (email sending, document listing) fail on their own.
    """
    if not x_user_id:
        return None
    user = get_runtime().store.get_user(x_user_id)
    if user is None:
        raise _http_error("unauthorized", "unknown user", status_code=401)
    return user


def _get_owned_workflow(workflow_id: str, user: Optional[User]) -> Workflow:
    workflow = get_runtime().engine.get_workflow(workflow_id)
    if workflow.user_id and (user is None or user.id != workflow.user_id):
        raise _http_error("not_found", "workflow not found", status_code=404)
    return workflow


def _workflow_envelope(workflow: Workflow) -> Envelope:
    return Envelope(status="ok", data=WorkflowResponse.from_model(workflow))


async def _execute_in_background(workflow_id: str, user: Optional[User]) -> None:
    try:
        await get_runtime().engine.execute_workflow(workflow_id, user)
    except ServiceError as exc:
        logger.warning(
            "background_workflow_execution_rejected",
            workflow_id=workflow_id,
            error_code=exc.error_code,
            message=exc.message,
        )


@router.post("/workflows", response_model=Envelope, status_code=201, tags=["workflows"])
async def create_workflow(
    body: CreateWorkflowRequest,
    user: Optional[User] = Depends(get_acting_user),
):
    """Plan a workflow from a natural-language intent, optionally running it."""
    runtime = get_runtime()
    workflow = await runtime.engine.create_workflow_from_intent(body.intent, body.session_id, user)
    if body.execute:
        workflow = await runtime.engine.execute_workflow(workflow.id, user)
    return _workflow_envelope(workflow)


@router.get("/workflows/{workflow_id}", response_model=Envelope, tags=["workflows"])
async def get_workflow(workflow_id: str, user: Optional[User] = Depends(get_acting_user)):
    return _workflow_envelope(_get_owned_workflow(workflow_id, user))


@router.post("/workflows/{workflow_id}/execute", response_model=Envelope, tags=["workflows"])
async def execute_workflow(
    workflow_id: str,
    background_tasks: BackgroundTasks,
    wait: bool = Query(True),
    user: Optional[User] = Depends(get_acting_user),
):
    """Run a workflow until it completes, fails or pauses for confirmation.

    With ``wait=false`` the run is started after the response is sent and
    clients follow progress through the session status feed.
    """
    workflow = _get_owned_workflow(workflow_id, user)
    if not wait:
        if not workflow.can_execute():
            raise _http_error(
                "conflict",
                "workflow is not executable",
                status_code=409,
                details={"workflow_id": workflow_id, "status": workflow.status},
            )
        background_tasks.add_task(_execute_in_background, workflow.id, user)
        return _workflow_envelope(workflow)
    finished = await get_runtime().engine.execute_workflow(workflow.id, user)
    return _workflow_envelope(finished)


@router.post("/workflows/{workflow_id}/confirm", response_model=Envelope, tags=["workflows"])
async def confirm_step(
    workflow_id: str,
    body: ConfirmRequest,
    user: Optional[User] = Depends(get_acting_user),
):
    workflow = _get_owned_workflow(workflow_id, user)
    result = await get_runtime().engine.confirm_step(workflow.id, body.confirmed, user)
    return _workflow_envelope(result)


@router.post("/workflows/{workflow_id}/cancel", response_model=Envelope, tags=["workflows"])
async def cancel_workflow(workflow_id: str, user: Optional[User] = Depends(get_acting_user)):
    workflow = _get_owned_workflow(workflow_id, user)
    return _workflow_envelope(get_runtime().engine.cancel_workflow(workflow.id))


@router.post("/workflows/{workflow_id}/approve", response_model=Envelope, tags=["workflows"])
async def approve_workflow(
    workflow_id: str,
    body: ApproveRequest,
    user: Optional[User] = Depends(get_acting_user),
):
    workflow = _get_owned_workflow(workflow_id, user)
    approver = body.approved_by or (user.id if user else None)
    if not approver:
        raise _http_error("validation_error", "approved_by is required", status_code=400)
    return _workflow_envelope(get_runtime().engine.approve_workflow(workflow.id, approver))


@router.post("/workflows/{workflow_id}/interaction", response_model=Envelope, tags=["workflows"])
async def resolve_interaction(
    workflow_id: str,
    body: UserInteractionRequest,
    user: Optional[User] = Depends(get_acting_user),
):
    workflow = _get_owned_workflow(workflow_id, user)
    return _workflow_envelope(
        get_runtime().engine.resolve_user_interaction(workflow.id, body.resolution)
    )


@router.post("/workflows/{workflow_id}/schedule", response_model=Envelope, tags=["workflows"])
async def schedule_workflow(
    workflow_id: str,
    body: ScheduleRequest,
    user: Optional[User] = Depends(get_acting_user),
):
    workflow = _get_owned_workflow(workflow_id, user)
    scheduled = get_runtime().engine.schedule_workflow(
        workflow.id,
        body.schedule_type,
        body.config,
        max_executions=body.max_executions,
    )
    return _workflow_envelope(scheduled)


@router.get("/sessions/{session_id}/statuses", response_model=Envelope, tags=["status"])
async def list_statuses(session_id: str, since: Optional[datetime] = Query(None)):
    """Progress lines for a session, strictly newer than ``since``."""
    statuses = get_runtime().store.list_statuses(session_id, since)
    return Envelope(
        status="ok",
        data=StatusListResponse(
            session_id=session_id,
            items=[StatusEntry.from_model(status) for status in statuses],
        ),
    )


@router.delete("/sessions/{session_id}/statuses", response_model=Envelope, tags=["status"])
async def clear_statuses(session_id: str):
    cleared = get_runtime().status.clear_statuses(session_id)
    return Envelope(status="ok", data={"session_id": session_id, "cleared": cleared})


@router.get("/sessions/{session_id}/workflows", response_model=Envelope, tags=["workflows"])
async def list_active_workflows(session_id: str):
    workflows = get_runtime().engine.active_workflows_for_session(session_id)
    return Envelope(
        status="ok",
        data={"items": [WorkflowResponse.from_model(workflow) for workflow in workflows]},
    )


__all__ = ["get_acting_user", "router"]

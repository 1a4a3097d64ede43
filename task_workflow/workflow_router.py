"""
Workflow API Router

FastAPI routes for task delegation and analytics:
- Task creation and lookup
- Delegation, completion, status changes and escalation
- Status view and history
- Role metrics and delegation analytics

WorkflowError subclasses map to HTTP status codes; the response detail is
the error's to_dict().
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from .analytics_model import AnalyticsFilter
from .errors import (
    DelegatorNotFoundError,
    InvalidRequestError,
    InvalidTransitionError,
    MalformedHistoryError,
    OwnershipMismatchError,
    TaskNotFoundError,
    TaskTerminalError,
    WorkflowError,
)
from .role_registry import CANONICAL_STAGES, Role, describe_graph, get_role_info
from .task_model import BlockerSeverity, CompletionOutcome, TaskStatus, TransitionResult
from .workflow_service import WorkflowService, get_workflow_service

logger = logging.getLogger("workflow_router")

router = APIRouter(prefix="/workflow", tags=["Task Workflow"])

ERROR_STATUS_CODES = {
    TaskNotFoundError: 404,
    TaskTerminalError: 409,
    OwnershipMismatchError: 409,
    InvalidTransitionError: 409,
    DelegatorNotFoundError: 409,
    InvalidRequestError: 422,
    MalformedHistoryError: 500,
}


def _http_error(error: WorkflowError) -> HTTPException:
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(error, error_type)),
        400,
    )
    if status_code >= 500:
        logger.error(f"[{error.code}] {error.message}")
    return HTTPException(status_code=status_code, detail=error.to_dict())


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class CreateTaskRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Task name")
    task_id: Optional[str] = Field(None, description="Explicit task id (generated when omitted)")
    description: str = ""


class DelegateRequest(BaseModel):
    from_role: Role
    to_role: Role
    message: str = Field("", description="Handoff note; required when sending work back")
    force: bool = Field(False, description="Skip the legal transition check")


class CompleteRequest(BaseModel):
    role: Role
    outcome: CompletionOutcome = CompletionOutcome.COMPLETED
    notes: str = Field("", description="Completion notes; required when rejecting")


class StatusChangeRequest(BaseModel):
    status: TaskStatus
    role: Optional[Role] = None
    reason: str = ""


class EscalateRequest(BaseModel):
    role: Role
    reason: str = Field(..., min_length=1, description="What needs attention")
    severity: BlockerSeverity = BlockerSeverity.MEDIUM
    blockers: List[str] = Field(default_factory=list, description="Blocking issues")
    required_changes: str = ""


def get_service() -> WorkflowService:
    return get_workflow_service()


def _result_response(result: TransitionResult) -> Dict[str, Any]:
    return {"success": True, **result.to_dict()}


# -----------------------------------------------------------------------------
# Roles
# -----------------------------------------------------------------------------
@router.get("/roles")
async def list_roles() -> Dict[str, Any]:
    """Roles, their metadata and the legal transition graph."""
    graph = describe_graph()
    roles = []
    for role in CANONICAL_STAGES:
        info = get_role_info(role)
        roles.append({
            "role": role.value,
            "display_name": info.display_name,
            "emoji": info.emoji,
            "description": info.description,
            "transitions": graph[role.value],
        })
    return {"roles": roles}


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------
@router.post("/tasks")
async def create_task(request: CreateTaskRequest, service: WorkflowService = Depends(get_service)):
    try:
        task = service.create_task(request.name, task_id=request.task_id, description=request.description)
    except WorkflowError as e:
        raise _http_error(e)
    return {"success": True, "task": task.to_dict()}


@router.get("/tasks")
async def list_tasks(service: WorkflowService = Depends(get_service)):
    tasks = service.list_tasks()
    return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, service: WorkflowService = Depends(get_service)):
    try:
        return {"task": service.get_task(task_id).to_dict()}
    except WorkflowError as e:
        raise _http_error(e)


@router.post("/tasks/{task_id}/delegate")
async def delegate_task(task_id: str, request: DelegateRequest, service: WorkflowService = Depends(get_service)):
    try:
        result = service.delegate(
            task_id, request.from_role, request.to_role, message=request.message, force=request.force
        )
    except WorkflowError as e:
        raise _http_error(e)
    return _result_response(result)


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: CompleteRequest, service: WorkflowService = Depends(get_service)):
    try:
        result = service.complete(task_id, request.role, request.outcome, notes=request.notes)
    except WorkflowError as e:
        raise _http_error(e)
    return _result_response(result)


@router.post("/tasks/{task_id}/status")
async def change_status(task_id: str, request: StatusChangeRequest, service: WorkflowService = Depends(get_service)):
    try:
        result = service.transition_status(task_id, request.status, role=request.role, reason=request.reason)
    except WorkflowError as e:
        raise _http_error(e)
    return _result_response(result)


@router.post("/tasks/{task_id}/escalate")
async def escalate_task(task_id: str, request: EscalateRequest, service: WorkflowService = Depends(get_service)):
    try:
        result = service.escalate(
            task_id,
            request.role,
            request.reason,
            severity=request.severity,
            blockers=request.blockers,
            required_changes=request.required_changes,
        )
    except WorkflowError as e:
        raise _http_error(e)
    return _result_response(result)


@router.get("/tasks/{task_id}/status")
async def get_status(
    task_id: str,
    completed_units: Optional[int] = Query(None, ge=0),
    total_units: Optional[int] = Query(None, ge=0),
    needs_research: bool = False,
    review_rejected: bool = False,
    service: WorkflowService = Depends(get_service),
):
    try:
        view = service.get_status(
            task_id,
            completed_units=completed_units,
            total_units=total_units,
            needs_research=needs_research,
            review_rejected=review_rejected,
        )
    except WorkflowError as e:
        raise _http_error(e)
    return view.to_dict()


@router.get("/tasks/{task_id}/history")
async def get_history(task_id: str, service: WorkflowService = Depends(get_service)):
    try:
        return service.get_history(task_id)
    except WorkflowError as e:
        raise _http_error(e)


# -----------------------------------------------------------------------------
# Analytics
# -----------------------------------------------------------------------------
def _analytics_filter(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    role: Optional[Role] = None,
    task_id: Optional[str] = None,
) -> AnalyticsFilter:
    try:
        return AnalyticsFilter(start_date=start_date, end_date=end_date, role=role, task_id=task_id)
    except WorkflowError as e:
        raise _http_error(e)


@router.get("/analytics/roles")
async def role_metrics(
    criteria: AnalyticsFilter = Depends(_analytics_filter),
    service: WorkflowService = Depends(get_service),
):
    return service.get_role_metrics(criteria).to_dict()


@router.get("/analytics/delegations")
async def delegation_analytics(
    criteria: AnalyticsFilter = Depends(_analytics_filter),
    service: WorkflowService = Depends(get_service),
):
    result = service.get_delegation_analytics(criteria)
    return {"filter": criteria.to_dict(), **result.to_dict()}

"""API routes for health, status and task execution."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from pagerun.api.deps import get_service
from pagerun.exceptions import BatchLimitError, WorkflowDisabledError, WorkflowNotFoundError
from pagerun.monitoring.event_bus import ProgressEvent
from pagerun.service import AutomationService, TaskStatus
from pagerun.workflow.models import ExecutionResult, ExecutionStatus

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class TaskRequest(BaseModel):
    """Parameters for ``POST /tasks`` and ``POST /tasks/execute``."""

    workflow_id: str = Field(..., description="Registered workflow to run.")
    input_value: str | None = Field(None, description="Value bound to the workflow's required input.")
    parameters: dict[str, str] = Field(default_factory=dict, description="Extra placeholder values.")
    correlation_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class BatchRequest(BaseModel):
    """Parameters for ``POST /tasks/batch``."""

    workflow_id: str
    input_values: list[str] = Field(..., min_length=1)
    parameters: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskAccepted(BaseModel):
    task_id: str
    status: str
    message: str


class TaskStatusResponse(BaseModel):
    task_id: str
    workflow_id: str
    status: str
    progress: ProgressEvent | None = None
    paused: bool = False
    result: ExecutionResult | None = None


class BatchItemResponse(BaseModel):
    input_value: str
    task_id: str
    status: ExecutionStatus
    result: ExecutionResult


class BatchResponse(BaseModel):
    workflow_id: str
    total_count: int
    success_count: int
    results: list[BatchItemResponse]


class ResumeResponse(BaseModel):
    task_id: str
    accepted: bool
    reason: str = ""


class StatusResponse(BaseModel):
    status: str
    uptime_sec: float
    browser_live: bool
    workflows: int
    running_tasks: list[str]
    paused_tasks: list[str]


def _http_error(exc: Exception) -> HTTPException:
    status_code = 404 if isinstance(exc, WorkflowNotFoundError) else 400
    return HTTPException(status_code=status_code, detail=str(exc))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/status", response_model=StatusResponse)
def status(service: AutomationService = Depends(get_service)) -> StatusResponse:
    """Report uptime, browser liveness and the tasks in flight."""
    return StatusResponse(
        status="running",
        uptime_sec=round(service.uptime_sec, 1),
        browser_live=service.sessions.is_live,
        workflows=service.registry.count,
        running_tasks=service.running_tasks,
        paused_tasks=service.paused_tasks,
    )


@router.post("/tasks", response_model=TaskAccepted, status_code=202)
def submit_task(
    req: TaskRequest,
    background_tasks: BackgroundTasks,
    service: AutomationService = Depends(get_service),
) -> TaskAccepted:
    """Queue a workflow execution. Returns immediately with a task id."""
    try:
        record = service.submit(req.workflow_id, input_value=req.input_value, metadata=req.metadata)
    except (WorkflowNotFoundError, WorkflowDisabledError) as exc:
        raise _http_error(exc) from exc

    background_tasks.add_task(_run_task, service, record.task_id, req)
    return TaskAccepted(
        task_id=record.task_id,
        status=TaskStatus.PENDING.value,
        message="Task queued. Poll /tasks/{task_id} or subscribe to /ws/progress/{task_id}.",
    )


@router.post("/tasks/execute", response_model=ExecutionResult)
async def execute_task(req: TaskRequest, service: AutomationService = Depends(get_service)) -> ExecutionResult:
    """Run a workflow and wait for its result."""
    try:
        return await service.run(
            req.workflow_id,
            input_value=req.input_value,
            parameters=req.parameters,
            correlation_id=req.correlation_id,
            metadata=req.metadata,
        )
    except (WorkflowNotFoundError, WorkflowDisabledError) as exc:
        raise _http_error(exc) from exc


@router.post("/tasks/batch", response_model=BatchResponse)
async def execute_batch(req: BatchRequest, service: AutomationService = Depends(get_service)) -> BatchResponse:
    """Run a workflow once per input value, serially, and return every result."""
    try:
        items = await service.run_batch(
            req.workflow_id,
            req.input_values,
            parameters=req.parameters,
            metadata=req.metadata,
        )
    except (WorkflowNotFoundError, WorkflowDisabledError, BatchLimitError) as exc:
        raise _http_error(exc) from exc

    results = [
        BatchItemResponse(
            input_value=item.input_value,
            task_id=item.task_id,
            status=item.result.status,
            result=item.result,
        )
        for item in items
    ]
    return BatchResponse(
        workflow_id=req.workflow_id,
        total_count=len(results),
        success_count=sum(1 for r in results if r.status is ExecutionStatus.COMPLETED),
        results=results,
    )


@router.get("/tasks/{task_id}", response_model=TaskStatusResponse)
def get_task(task_id: str, service: AutomationService = Depends(get_service)) -> TaskStatusResponse:
    """Return the status, latest progress event and result of a task."""
    record = service.get_task(task_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Task not found.")
    return TaskStatusResponse(
        task_id=record.task_id,
        workflow_id=record.workflow_id,
        status=record.status.value,
        progress=service.progress_store.get(task_id),
        paused=task_id in service.paused_tasks,
        result=record.result,
    )


@router.post("/tasks/{task_id}/resume", response_model=ResumeResponse)
async def resume_task(task_id: str, service: AutomationService = Depends(get_service)) -> ResumeResponse:
    """Ask a paused task to continue. Refused while the challenge is still visible."""
    result = await service.resume(task_id)
    return ResumeResponse(task_id=task_id, accepted=result.accepted, reason=result.reason)


async def _run_task(service: AutomationService, task_id: str, req: TaskRequest) -> None:
    """Background task that executes a queued workflow."""
    try:
        await service.run(
            req.workflow_id,
            input_value=req.input_value,
            parameters=req.parameters,
            task_id=task_id,
            correlation_id=req.correlation_id,
            metadata=req.metadata,
        )
    except Exception:
        logger.exception("Task %s failed outside the interpreter", task_id)

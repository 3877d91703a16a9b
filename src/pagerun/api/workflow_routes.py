"""API routes for browsing registered workflows.

Endpoints:

* ``GET /workflows`` — list all registered workflows (summary).
* ``GET /workflows/{workflow_id}`` — full workflow definition.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from pagerun.api.deps import get_service
from pagerun.service import AutomationService
from pagerun.workflow.models import RequiredInput, Workflow

workflow_router = APIRouter(prefix="/workflows", tags=["workflows"])


class WorkflowSummary(BaseModel):
    """Lightweight summary for list views."""

    workflow_id: str
    name: str
    description: str
    enabled: bool
    version: str
    step_count: int
    required_input: RequiredInput | None = None
    tags: list[str]


@workflow_router.get("", response_model=list[WorkflowSummary])
def list_workflows(service: AutomationService = Depends(get_service)) -> list[WorkflowSummary]:
    """Return a summary of every registered workflow."""
    return [
        WorkflowSummary(
            workflow_id=wf.workflow_id,
            name=wf.name,
            description=wf.description,
            enabled=wf.enabled,
            version=wf.version,
            step_count=len(wf.steps),
            required_input=wf.required_input,
            tags=wf.tags,
        )
        for wf in service.registry.workflows
    ]


@workflow_router.get("/{workflow_id}", response_model=Workflow)
def get_workflow(workflow_id: str, service: AutomationService = Depends(get_service)) -> Workflow:
    """Return the full definition of one workflow."""
    workflow = service.registry.get(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return workflow

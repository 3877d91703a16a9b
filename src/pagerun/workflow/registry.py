"""Workflow registry — id-keyed lookup of loaded workflow templates."""

from __future__ import annotations

import logging

from pagerun.exceptions import WorkflowDisabledError, WorkflowNotFoundError
from pagerun.workflow.models import Workflow

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Holds workflow templates by ``workflow_id``.

    Registration order is preserved for listing. Registering a workflow
    with an id that is already present replaces the earlier definition.
    """

    def __init__(self) -> None:
        self._workflows: dict[str, Workflow] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, workflow: Workflow) -> None:
        """Register a workflow, replacing any earlier one with the same id."""
        if workflow.workflow_id in self._workflows:
            logger.info("Replacing registered workflow %s", workflow.workflow_id)
        self._workflows[workflow.workflow_id] = workflow

    def register_many(self, workflows: list[Workflow]) -> int:
        """Register multiple workflows at once.

        Returns:
            The number of workflows registered.
        """
        for wf in workflows:
            self.register(wf)
        return len(workflows)

    def remove(self, workflow_id: str) -> bool:
        """Remove a workflow by id. Returns ``True`` if it was registered."""
        return self._workflows.pop(workflow_id, None) is not None

    def clear(self) -> None:
        """Remove every registered workflow."""
        self._workflows.clear()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, workflow_id: str) -> Workflow | None:
        """Return the workflow with *workflow_id*, or ``None``."""
        return self._workflows.get(workflow_id)

    def require(self, workflow_id: str) -> Workflow:
        """Return an enabled workflow or raise.

        Raises:
            WorkflowNotFoundError: If no workflow has this id.
            WorkflowDisabledError: If the workflow is disabled.
        """
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if not workflow.enabled:
            raise WorkflowDisabledError(workflow_id)
        return workflow

    @property
    def count(self) -> int:
        """Return the number of registered workflows."""
        return len(self._workflows)

    @property
    def workflows(self) -> list[Workflow]:
        """Return a copy of all registered workflows."""
        return list(self._workflows.values())

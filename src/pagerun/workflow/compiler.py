"""Placeholder compilation — resolve ``{{name}}`` tokens before execution.

Compilation is a separate pass that produces an immutable, fully resolved
step tuple; the template ``Workflow`` is never mutated. Unknown placeholders
are left byte-for-byte unchanged so a workflow can carry tokens meant for a
later stage (or simply typos) without failing the run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from pydantic import TypeAdapter

from pagerun.workflow.models import Step, TaskContext, Workflow

logger = logging.getLogger(__name__)

# {{name}}, {{ name }}, {{target.id}}
_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")

_STEP_ADAPTER: TypeAdapter[Step] = TypeAdapter(Step)


def substitute(template: str, values: dict[str, str]) -> str:
    """Replace every known ``{{name}}`` token in *template*.

    Args:
        template: The string potentially containing placeholders.
        values: Placeholder name → replacement value.

    Returns:
        The string with all known placeholders replaced; unknown ones untouched.
    """
    if "{{" not in template:
        return template

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values:
            return values[key]
        logger.debug("Unresolved placeholder left as-is: %s", match.group(0))
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template)


def _substitute_tree(node: Any, values: dict[str, str]) -> Any:
    if isinstance(node, str):
        return substitute(node, values)
    if isinstance(node, dict):
        return {key: _substitute_tree(val, values) for key, val in node.items()}
    if isinstance(node, list):
        return [_substitute_tree(item, values) for item in node]
    return node


@dataclass(frozen=True)
class CompiledWorkflow:
    """A workflow with every placeholder resolved for one task."""

    workflow_id: str
    steps: tuple[Step, ...]

    def __len__(self) -> int:
        return len(self.steps)


def compile_step(step: Step, values: dict[str, str]) -> Step:
    """Return a copy of *step* with every string field substituted."""
    raw = step.model_dump(mode="python")
    return _STEP_ADAPTER.validate_python(_substitute_tree(raw, values))


def compile_workflow(workflow: Workflow, context: TaskContext) -> CompiledWorkflow:
    """Resolve placeholders in every step of *workflow* against *context*.

    Args:
        workflow: The immutable workflow template.
        context: Run-time values for this task.

    Returns:
        A ``CompiledWorkflow`` whose steps are ready for execution.
    """
    values = context.placeholder_values()
    steps = tuple(compile_step(step, values) for step in workflow.steps)
    return CompiledWorkflow(workflow_id=workflow.workflow_id, steps=steps)

"""Declarative workflows: models, placeholder compilation, loading and execution."""

from pagerun.workflow.compiler import CompiledWorkflow, compile_workflow, substitute
from pagerun.workflow.interpreter import WorkflowInterpreter
from pagerun.workflow.loader import load_workflow_from_file, load_workflows_from_dir
from pagerun.workflow.models import (
    ExecutionError,
    ExecutionResult,
    ExecutionStatus,
    ScreenshotRef,
    Step,
    StepAction,
    StepOutcome,
    TaskContext,
    Workflow,
)
from pagerun.workflow.registry import WorkflowRegistry

__all__ = [
    "CompiledWorkflow",
    "ExecutionError",
    "ExecutionResult",
    "ExecutionStatus",
    "ScreenshotRef",
    "Step",
    "StepAction",
    "StepOutcome",
    "TaskContext",
    "Workflow",
    "WorkflowInterpreter",
    "WorkflowRegistry",
    "compile_workflow",
    "load_workflow_from_file",
    "load_workflows_from_dir",
    "substitute",
]

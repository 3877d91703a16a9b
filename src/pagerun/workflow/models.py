"""Workflow data models — declarative step sequences and execution results.

Steps form a closed tagged union discriminated on ``action``. Field aliases
accept the camelCase names used by existing workflow documents
(``saveAs``, ``dataName``). Every string field may contain ``{{name}}``
placeholders that are resolved by :mod:`pagerun.workflow.compiler` before
execution begins.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from pagerun.exceptions import ErrorKind


class StepAction(str, Enum):
    """Action names a workflow step can carry."""

    NAVIGATE = "navigate"
    WAIT = "wait"
    WAIT_FOR_SELECTOR = "waitForSelector"
    CLICK = "click"
    SCREENSHOT = "screenshot"
    SCROLL_PAGE = "scrollPage"
    WAIT_FOR_NETWORK_IDLE = "waitForNetworkIdle"
    EXTRACT_DATA = "extractData"
    COMPOSITE_EXTRACT = "compositeExtract"


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    description: str = ""


class NavigateStep(_StepBase):
    """Navigate to ``url`` and wait for the page-ready marker."""

    action: Literal["navigate"] = "navigate"
    url: str
    ready_selector: str = Field(
        default="",
        alias="readySelector",
        description="Overrides the configured page-ready marker for this navigation.",
    )


class WaitStep(_StepBase):
    """Suspend for a fixed duration."""

    action: Literal["wait"] = "wait"
    milliseconds: int = Field(default=1000, ge=0)


class WaitForSelectorStep(_StepBase):
    """Wait until ``selector`` is visible."""

    action: Literal["waitForSelector"] = "waitForSelector"
    selector: str


class ClickStep(_StepBase):
    """Wait until ``selector`` is visible, then click it."""

    action: Literal["click"] = "click"
    selector: str


class ScreenshotStep(_StepBase):
    """Capture an element (or the whole page) and upload it."""

    action: Literal["screenshot"] = "screenshot"
    selector: str = ""
    stitched: bool = False
    save_as: str = Field(default="", alias="saveAs")


class ScrollRegionStep(_StepBase):
    """Scroll the page (or the region under ``selector``) until it stops changing."""

    action: Literal["scrollPage"] = "scrollPage"
    selector: str = ""


class WaitForNetworkIdleStep(_StepBase):
    """Wait for a quiet network window with an upper bound."""

    action: Literal["waitForNetworkIdle"] = "waitForNetworkIdle"
    idle_ms: int = Field(default=1000, ge=0, alias="idleMs")
    timeout_ms: int = Field(default=60_000, ge=1, alias="timeoutMs")


class ExtractDataStep(_StepBase):
    """Resolve one selector expression and store the text under ``data_name``."""

    action: Literal["extractData"] = "extractData"
    selector: str
    data_name: str = Field(alias="dataName")


class CompositeSource(BaseModel):
    """One named source for a composite extraction."""

    model_config = ConfigDict(frozen=True)

    name: str
    selector: str


class CompositeExtractStep(_StepBase):
    """Extract several sources and substitute them into ``template`` (``${name}``)."""

    action: Literal["compositeExtract"] = "compositeExtract"
    template: str
    sources: list[CompositeSource] = Field(default_factory=list)
    data_name: str = Field(alias="dataName")


Step = Annotated[
    Union[
        NavigateStep,
        WaitStep,
        WaitForSelectorStep,
        ClickStep,
        ScreenshotStep,
        ScrollRegionStep,
        WaitForNetworkIdleStep,
        ExtractDataStep,
        CompositeExtractStep,
    ],
    Field(discriminator="action"),
]


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class RequiredInput(BaseModel):
    """The single input a caller supplies when running the workflow by value."""

    model_config = ConfigDict(frozen=True)

    key: str = "target_id"
    label: str = ""


class Workflow(BaseModel):
    """An immutable, ordered list of steps defining one automation run."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    workflow_id: str = Field(
        ...,
        alias="workflowId",
        description="Unique identifier (e.g., 'creator_profile_v1').",
        pattern=r"^[a-z0-9_]+$",
    )
    name: str = ""
    description: str = ""
    required_input: RequiredInput | None = Field(default=None, alias="requiredInput")
    steps: list[Step] = Field(
        ...,
        min_length=1,
        description="Ordered steps to execute. Must have at least one.",
    )

    enabled: bool = True
    version: str = "1.0"
    tags: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Run-time context and results
# ---------------------------------------------------------------------------


class TaskContext(BaseModel):
    """Run-time values substituted into a workflow. Built once per execution."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    correlation_id: str = ""
    parameters: dict[str, str] = Field(default_factory=dict)

    def placeholder_values(self) -> dict[str, str]:
        """Return the mapping used to resolve ``{{name}}`` placeholders."""
        values = dict(self.parameters)
        values.setdefault("taskId", self.task_id)
        values.setdefault("task_id", self.task_id)
        if self.correlation_id:
            values.setdefault("correlationId", self.correlation_id)
            values.setdefault("correlation_id", self.correlation_id)
        return values


class ExecutionStatus(str, Enum):
    """Terminal status of a workflow execution."""

    COMPLETED = "completed"
    FAILED = "failed"


class ScreenshotRef(BaseModel):
    """An uploaded image recorded by a screenshot step."""

    name: str
    url: str


class ExecutionError(BaseModel):
    """Why an execution failed.

    ``phase`` names the step action that failed (or ``session`` when the
    page could not be acquired); ``kind`` is the error category.
    """

    message: str
    phase: str
    kind: ErrorKind = ErrorKind.INTERNAL
    step_index: int | None = None
    diagnostic: str = ""


class ExecutionResult(BaseModel):
    """Structured outcome of a full workflow execution."""

    task_id: str
    workflow_id: str = ""
    status: ExecutionStatus
    data: dict[str, str] = Field(default_factory=dict)
    screenshots: list[ScreenshotRef] = Field(default_factory=list)
    error: ExecutionError | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    duration_sec: float = 0.0


# ---------------------------------------------------------------------------
# Per-step outcome
# ---------------------------------------------------------------------------


class OutcomeTag(str, Enum):
    """How a single step ended."""

    OK = "ok"
    RECOVERED = "recovered"
    FATAL = "fatal"


@dataclass(frozen=True)
class StepOutcome:
    """Explicit per-step result the interpreter loop branches on."""

    tag: OutcomeTag
    detail: str = ""
    error: ExecutionError | None = None

    @classmethod
    def ok(cls, detail: str = "") -> "StepOutcome":
        return cls(OutcomeTag.OK, detail)

    @classmethod
    def recovered(cls, detail: str) -> "StepOutcome":
        return cls(OutcomeTag.RECOVERED, detail)

    @classmethod
    def fatal(cls, error: ExecutionError) -> "StepOutcome":
        return cls(OutcomeTag.FATAL, error.message, error)

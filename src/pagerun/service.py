"""Automation service — wires the runtime together for the API and the CLI.

Owns one instance of each shared component (session manager, event bus,
progress store, interrupt coordinator, blob store, workflow registry,
interpreter) and keeps an in-memory table of tasks started through it.
Finished tasks beyond ``runner.task_retention`` are dropped, oldest first.

Usage::

    service = build_service(get_settings())
    service.load_workflows()
    result = await service.run("creator_profile", input_value="12345")
    await service.shutdown()
"""

from __future__ import annotations

import logging
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pagerun.browser.session import SessionManager
from pagerun.exceptions import BatchLimitError
from pagerun.interrupt.coordinator import InterruptCoordinator, ResumeResult
from pagerun.interrupt.detector import ChallengeDetector
from pagerun.monitoring.event_bus import EventBus, JsonlSink, LoggingSink, ProgressStore, WebhookSink
from pagerun.settings import Settings
from pagerun.storage.blob import BlobStore, build_blob_store
from pagerun.workflow.interpreter import WorkflowInterpreter
from pagerun.workflow.loader import load_workflows_from_dir
from pagerun.workflow.models import ExecutionResult, ExecutionStatus, TaskContext, Workflow
from pagerun.workflow.registry import WorkflowRegistry

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Lifecycle of a task tracked by the service."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_FINISHED = (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class TaskRecord:
    """One task started through the service."""

    task_id: str
    workflow_id: str
    status: TaskStatus = TaskStatus.PENDING
    input_value: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    result: ExecutionResult | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class BatchItem:
    """Outcome of one input of a batch run."""

    input_value: str
    task_id: str
    result: ExecutionResult


def new_task_id() -> str:
    """Return a fresh random task id."""
    return uuid.uuid4().hex


class AutomationService:
    """Facade over the runtime components.

    All collaborators are injectable; :func:`build_service` assembles the
    production set from settings.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        sessions: SessionManager,
        blob_store: BlobStore,
        bus: EventBus | None = None,
        progress_store: ProgressStore | None = None,
        coordinator: InterruptCoordinator | None = None,
        registry: WorkflowRegistry | None = None,
        interpreter: WorkflowInterpreter | None = None,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.blob_store = blob_store
        self.bus = bus or EventBus()
        self.progress_store = progress_store or ProgressStore(max_entries=settings.runner.task_retention)
        self.coordinator = coordinator
        self.registry = registry or WorkflowRegistry()
        self.interpreter = interpreter or WorkflowInterpreter(
            sessions,
            blob_store,
            settings=settings,
            coordinator=coordinator,
            progress=self.bus,
        )
        self.bus.add_sink(self.progress_store)

        self._tasks: dict[str, TaskRecord] = {}
        self._started = time.monotonic()

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def load_workflows(self) -> int:
        """Register every workflow found in ``runner.workflow_dir``."""
        count = self.registry.register_many(load_workflows_from_dir(self.settings.runner.workflow_dir))
        logger.info("Registered %d workflow(s) from %s", count, self.settings.runner.workflow_dir)
        return count

    @staticmethod
    def build_context(
        workflow: Workflow,
        *,
        task_id: str | None = None,
        input_value: str | None = None,
        parameters: dict[str, str] | None = None,
        correlation_id: str = "",
    ) -> TaskContext:
        """Build the run-time context for one execution of *workflow*.

        ``input_value`` is stored under the workflow's required-input key.
        """
        values = dict(parameters or {})
        if input_value is not None:
            key = workflow.required_input.key if workflow.required_input else "target_id"
            values[key] = input_value
        return TaskContext(task_id=task_id or new_task_id(), correlation_id=correlation_id, parameters=values)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def submit(
        self,
        workflow_id: str,
        *,
        input_value: str | None = None,
        metadata: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> TaskRecord:
        """Validate *workflow_id* and register a pending task for later execution.

        Raises:
            WorkflowNotFoundError: Unknown workflow.
            WorkflowDisabledError: Workflow disabled.
        """
        self.registry.require(workflow_id)
        record = TaskRecord(
            task_id=task_id or new_task_id(),
            workflow_id=workflow_id,
            input_value=input_value or "",
            metadata=dict(metadata or {}),
        )
        self._tasks[record.task_id] = record
        return record

    async def run(
        self,
        workflow_id: str,
        *,
        input_value: str | None = None,
        parameters: dict[str, str] | None = None,
        task_id: str | None = None,
        correlation_id: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """Execute a registered workflow and record the result.

        Raises:
            WorkflowNotFoundError: Unknown workflow.
            WorkflowDisabledError: Workflow disabled.
        """
        workflow = self.registry.require(workflow_id)
        record = self._tasks.get(task_id) if task_id else None
        if record is None:
            record = self.submit(workflow_id, input_value=input_value, metadata=metadata, task_id=task_id)

        context = self.build_context(
            workflow,
            task_id=record.task_id,
            input_value=input_value,
            parameters=parameters,
            correlation_id=correlation_id,
        )
        return await self._execute(record, workflow, context)

    async def run_workflow(self, workflow: Workflow, context: TaskContext) -> ExecutionResult:
        """Execute an unregistered *workflow* (e.g. loaded from a file by the CLI)."""
        record = TaskRecord(task_id=context.task_id, workflow_id=workflow.workflow_id)
        self._tasks[record.task_id] = record
        return await self._execute(record, workflow, context)

    async def run_batch(
        self,
        workflow_id: str,
        input_values: list[str],
        *,
        parameters: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> list[BatchItem]:
        """Execute *workflow_id* once per input value, one after another.

        Raises:
            BatchLimitError: More inputs than ``runner.max_batch_size``.
            WorkflowNotFoundError: Unknown workflow.
            WorkflowDisabledError: Workflow disabled.
        """
        limit = self.settings.runner.max_batch_size
        if len(input_values) > limit:
            raise BatchLimitError(len(input_values), limit)
        self.registry.require(workflow_id)

        items: list[BatchItem] = []
        for value in input_values:
            result = await self.run(workflow_id, input_value=value, parameters=parameters, metadata=metadata)
            items.append(BatchItem(input_value=value, task_id=result.task_id, result=result))

        succeeded = sum(1 for i in items if i.result.status is ExecutionStatus.COMPLETED)
        logger.info("Batch %s: %d/%d succeeded", workflow_id, succeeded, len(items))
        return items

    async def resume(self, task_id: str) -> ResumeResult:
        """Forward a resume request to the interrupt coordinator."""
        if self.coordinator is None:
            return ResumeResult(False, "not_paused")
        return await self.coordinator.resume(task_id)

    def get_task(self, task_id: str) -> TaskRecord | None:
        """Return the record of *task_id*, or ``None``."""
        return self._tasks.get(task_id)

    @property
    def tasks(self) -> list[TaskRecord]:
        """All known task records, oldest first."""
        return list(self._tasks.values())

    @property
    def running_tasks(self) -> list[str]:
        """Ids of tasks currently executing."""
        return [t.task_id for t in self._tasks.values() if t.status is TaskStatus.RUNNING]

    @property
    def paused_tasks(self) -> list[str]:
        """Ids of tasks waiting for a resume."""
        return self.coordinator.paused_tasks if self.coordinator else []

    @property
    def uptime_sec(self) -> float:
        return time.monotonic() - self._started

    async def shutdown(self) -> None:
        """Close the browser session."""
        await self.sessions.close()
        logger.info("Automation service stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute(self, record: TaskRecord, workflow: Workflow, context: TaskContext) -> ExecutionResult:
        record.status = TaskStatus.RUNNING
        try:
            result = await self.interpreter.execute(workflow, context)
        except BaseException:
            record.status = TaskStatus.FAILED
            self._prune_tasks(keep=record.task_id)
            raise
        record.result = result
        record.status = TaskStatus.COMPLETED if result.status is ExecutionStatus.COMPLETED else TaskStatus.FAILED
        self._prune_tasks(keep=record.task_id)
        return result

    def _prune_tasks(self, *, keep: str) -> None:
        """Drop the oldest finished tasks beyond ``runner.task_retention``, never *keep*."""
        excess = len(self._tasks) - self.settings.runner.task_retention
        if excess <= 0:
            return
        finished = [r.task_id for r in self._tasks.values() if r.status in _FINISHED and r.task_id != keep]
        dropped = finished[:excess]
        for task_id in dropped:
            del self._tasks[task_id]
            self.progress_store.forget(task_id)
        if dropped:
            logger.debug("Pruned %d finished task(s)", len(dropped))


def build_service(
    settings: Settings,
    *,
    headless: bool | None = None,
    interactive: bool | None = None,
) -> AutomationService:
    """Assemble an :class:`AutomationService` from *settings*.

    Args:
        settings: Resolved settings.
        headless: Override ``browser.headless``.
        interactive: Override ``challenge.enabled`` (pause on challenges).
    """
    bus = EventBus()
    bus.add_sink(LoggingSink())
    if settings.monitoring.jsonl_output:
        bus.add_sink(JsonlSink(sys.stderr))
    if settings.monitoring.webhook_url:
        bus.add_sink(WebhookSink(settings.monitoring.webhook_url, timeout_sec=settings.monitoring.webhook_timeout_sec))

    coordinator = None
    enabled = settings.challenge.enabled if interactive is None else interactive
    if enabled:
        coordinator = InterruptCoordinator(
            ChallengeDetector.from_settings(settings),
            progress=bus,
            pause_timeout_sec=settings.challenge.pause_timeout_sec,
        )

    return AutomationService(
        settings,
        sessions=SessionManager.from_settings(settings, headless=headless),
        blob_store=build_blob_store(settings),
        bus=bus,
        coordinator=coordinator,
    )

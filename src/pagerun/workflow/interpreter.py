"""Workflow interpreter — runs compiled steps against one browser page.

Each execution:

1. compiles the workflow against the task context (placeholders resolved);
2. acquires a fresh page from the shared session;
3. runs the steps strictly in order, checking the time budget before each;
4. releases the page whatever happens.

Every step handler returns a :class:`StepOutcome`. ``ok`` and ``recovered``
continue; ``fatal`` stops the loop and fails the task. Extraction misses are
``recovered``: the configured sentinel text is stored instead of a value.
Browser exceptions never leave this module; they are classified into an
:class:`ExecutionError` at the step boundary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagerun.browser.extraction import DataExtractor
from pagerun.browser.network import NetworkIdleMonitor
from pagerun.browser.scrolling import scroll_to_bottom
from pagerun.browser.stitching import LongCaptureCompositor
from pagerun.exceptions import (
    CompositingError,
    ElementNotFoundError,
    ErrorKind,
    NavigationError,
    PagerunError,
    UploadError,
    WorkflowTimeoutError,
)
from pagerun.monitoring.event_bus import ProgressStatus, publish_progress
from pagerun.workflow.compiler import compile_workflow
from pagerun.workflow.models import (
    ClickStep,
    CompositeExtractStep,
    ExecutionError,
    ExecutionResult,
    ExecutionStatus,
    ExtractDataStep,
    NavigateStep,
    OutcomeTag,
    ScreenshotRef,
    ScreenshotStep,
    ScrollRegionStep,
    StepOutcome,
    TaskContext,
    WaitForNetworkIdleStep,
    WaitForSelectorStep,
    WaitStep,
    Workflow,
)

if TYPE_CHECKING:
    from playwright.async_api import ElementHandle, Page

    from pagerun.browser.session import SessionManager
    from pagerun.interrupt.coordinator import InterruptCoordinator
    from pagerun.monitoring.event_bus import ProgressChannel
    from pagerun.settings import Settings
    from pagerun.storage.blob import BlobStore

logger = logging.getLogger(__name__)

_CLOSED_MARKERS = ("has been closed", "target closed", "browser has disconnected", "connection closed")


@dataclass
class _TaskRun:
    """Mutable state of one execution."""

    context: TaskContext
    page: "Page"
    network: NetworkIdleMonitor
    total: int
    data: dict[str, str] = field(default_factory=dict)
    screenshots: list[ScreenshotRef] = field(default_factory=list)
    paused_sec: float = 0.0


def _first_line(exc: BaseException, limit: int = 300) -> str:
    text = str(exc).strip()
    line = text.splitlines()[0] if text else type(exc).__name__
    return line[:limit]


class WorkflowInterpreter:
    """Execute workflows step by step.

    Args:
        sessions: Hands out one page per execution.
        blob_store: Receives screenshot bytes.
        settings: Resolved settings; defaults to ``get_settings()``.
        coordinator: Pauses tasks on challenge overlays; ``None`` disables checks.
        progress: Receives per-step progress events.
        sleep: Awaitable used by ``wait`` steps.
    """

    def __init__(
        self,
        sessions: "SessionManager",
        blob_store: "BlobStore",
        *,
        settings: "Settings | None" = None,
        coordinator: "InterruptCoordinator | None" = None,
        progress: "ProgressChannel | None" = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if settings is None:
            from pagerun.settings import get_settings

            settings = get_settings()

        self._sessions = sessions
        self._blob_store = blob_store
        self._settings = settings
        self._coordinator = coordinator
        self._progress = progress
        self._sleep = sleep

        self._handlers: dict[type, Callable[[int, Any, _TaskRun], Awaitable[StepOutcome]]] = {
            NavigateStep: self._navigate,
            WaitStep: self._wait,
            WaitForSelectorStep: self._wait_for_selector,
            ClickStep: self._click,
            ScreenshotStep: self._screenshot,
            ScrollRegionStep: self._scroll,
            WaitForNetworkIdleStep: self._wait_for_network_idle,
            ExtractDataStep: self._extract,
            CompositeExtractStep: self._composite_extract,
        }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, workflow: Workflow, context: TaskContext) -> ExecutionResult:
        """Run *workflow* for *context* and return its result. Never raises for step failures."""
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        compiled = compile_workflow(workflow, context)
        total = len(compiled)
        task_id = context.task_id

        logger.info("Task %s: running workflow %s (%d steps)", task_id, workflow.workflow_id, total)

        error: ExecutionError | None = None
        run: _TaskRun | None = None
        page = None
        try:
            page = await self._sessions.acquire()
        except Exception as exc:
            logger.error("Task %s: could not acquire a page: %s", task_id, exc)
            error = ExecutionError(
                message=f"Could not open a browser page: {_first_line(exc)}",
                phase="session",
                kind=getattr(exc, "kind", ErrorKind.SESSION),
                diagnostic=type(exc).__name__,
            )

        if page is not None:
            network = NetworkIdleMonitor(page)
            network.attach()
            run = _TaskRun(context=context, page=page, network=network, total=total)
            try:
                error = await self._run_steps(compiled.steps, run, start)
            finally:
                network.detach()
                if self._coordinator is not None:
                    self._coordinator.cancel(task_id)
                await self._sessions.release(page)

        duration = time.monotonic() - start
        status = ExecutionStatus.FAILED if error else ExecutionStatus.COMPLETED
        result = ExecutionResult(
            task_id=task_id,
            workflow_id=workflow.workflow_id,
            status=status,
            data=dict(run.data) if run else {},
            screenshots=list(run.screenshots) if run else [],
            error=error,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            duration_sec=duration,
        )

        if error is None:
            await self._emit(task_id, ProgressStatus.COMPLETED, total, total, "Workflow completed")
        else:
            await self._emit(task_id, ProgressStatus.FAILED, error.step_index or 0, total, error.message)

        logger.info(
            "Task %s: workflow %s %s in %.1fs (%d data, %d screenshots)",
            task_id,
            workflow.workflow_id,
            status.value.upper(),
            duration,
            len(result.data),
            len(result.screenshots),
        )
        return result

    async def _run_steps(self, steps: tuple[Any, ...], run: _TaskRun, start: float) -> ExecutionError | None:
        budget = self._settings.runner.max_duration_sec
        task_id = run.context.task_id

        for index, step in enumerate(steps):
            elapsed = time.monotonic() - start - run.paused_sec
            if elapsed >= budget:
                message = (
                    f"Time budget exceeded at step {index + 1}/{run.total} "
                    f"after {elapsed:.1f}s (budget: {budget}s)"
                )
                logger.warning("Task %s: %s", task_id, message)
                exc = WorkflowTimeoutError(message)
                return ExecutionError(
                    message=message,
                    phase=step.action,
                    kind=exc.kind,
                    step_index=index,
                    diagnostic=type(exc).__name__,
                )

            await self._emit(task_id, ProgressStatus.RUNNING, index, run.total, step.description or step.action)
            outcome = await self._execute_step(index, step, run)

            if outcome.tag is OutcomeTag.FATAL:
                logger.warning(
                    "Task %s: step %d/%d (%s) failed: %s",
                    task_id,
                    index + 1,
                    run.total,
                    step.action,
                    outcome.detail,
                )
                return outcome.error
            if outcome.tag is OutcomeTag.RECOVERED:
                logger.info("Task %s: step %d/%d (%s) recovered: %s", task_id, index + 1, run.total, step.action, outcome.detail)
        return None

    async def _execute_step(self, index: int, step: Any, run: _TaskRun) -> StepOutcome:
        handler = self._handlers.get(type(step))
        if handler is None:
            return StepOutcome.fatal(
                ExecutionError(
                    message=f"Unsupported step action: {step.action}",
                    phase=step.action,
                    kind=ErrorKind.INTERNAL,
                    step_index=index,
                )
            )
        try:
            return await handler(index, step, run)
        except Exception as exc:
            logger.debug("Step %d (%s) raised", index + 1, step.action, exc_info=True)
            return StepOutcome.fatal(self._classify(exc, index, step))

    @staticmethod
    def _classify(exc: Exception, index: int, step: Any) -> ExecutionError:
        """Map an exception raised by a step onto the error taxonomy."""
        if isinstance(exc, PagerunError):
            kind = exc.kind
        elif isinstance(exc, PlaywrightTimeoutError):
            kind = ErrorKind.NAVIGATION if isinstance(step, NavigateStep) else ErrorKind.ELEMENT_NOT_FOUND
        elif isinstance(exc, PlaywrightError):
            if any(marker in str(exc).lower() for marker in _CLOSED_MARKERS):
                kind = ErrorKind.STALE_SESSION
            elif isinstance(step, NavigateStep):
                kind = ErrorKind.NAVIGATION
            else:
                kind = ErrorKind.INTERNAL
        else:
            kind = ErrorKind.INTERNAL

        return ExecutionError(
            message=f"Step {index + 1} ({step.action}) failed: {_first_line(exc)}",
            phase=step.action,
            kind=kind,
            step_index=index,
            diagnostic=type(exc).__name__,
        )

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    async def _navigate(self, index: int, step: NavigateStep, run: _TaskRun) -> StepOutcome:
        runner = self._settings.runner
        await run.page.goto(step.url, wait_until="load", timeout=self._settings.browser.navigation_timeout_ms)
        # a challenge served on load usually hides the ready marker
        await self._checkpoint(index, run)

        ready = step.ready_selector or runner.ready_selector
        if ready:
            try:
                await self._wait_visible_or_pause(index, run, ready, runner.ready_timeout_ms)
            except ElementNotFoundError as exc:
                raise NavigationError(f"Page-ready marker {ready!r} not visible after loading {step.url}") from exc

        return StepOutcome.ok(step.url)

    async def _wait(self, index: int, step: WaitStep, run: _TaskRun) -> StepOutcome:
        await self._sleep(step.milliseconds / 1000)
        return StepOutcome.ok()

    async def _wait_for_selector(self, index: int, step: WaitForSelectorStep, run: _TaskRun) -> StepOutcome:
        await self._wait_visible(run.page, step.selector, self._settings.browser.default_timeout_ms)
        return StepOutcome.ok(step.selector)

    async def _click(self, index: int, step: ClickStep, run: _TaskRun) -> StepOutcome:
        timeout_ms = self._settings.browser.default_timeout_ms
        await self._wait_visible_or_pause(index, run, step.selector, timeout_ms)
        await run.page.click(step.selector, timeout=timeout_ms)
        await self._checkpoint(index, run)
        return StepOutcome.ok(step.selector)

    async def _screenshot(self, index: int, step: ScreenshotStep, run: _TaskRun) -> StepOutcome:
        name = step.save_as or f"{int(time.time() * 1000)}_screenshot.png"
        timeout_ms = self._settings.browser.default_timeout_ms

        if step.stitched:
            if not step.selector:
                raise CompositingError("A stitched screenshot needs the selector of a scrollable element")
            capture = self._settings.capture
            compositor = LongCaptureCompositor(
                run.page,
                network=run.network,
                overlap_px=capture.overlap_px,
                idle_ms=capture.idle_ms,
                idle_timeout_ms=capture.idle_timeout_ms,
                max_tiles=capture.max_tiles,
                timeout_ms=timeout_ms,
            )
            data = await compositor.capture(step.selector)
        elif step.selector:
            element = await self._wait_visible(run.page, step.selector, timeout_ms)
            data = await element.screenshot()
        else:
            await scroll_to_bottom(run.page, **self._scroll_options())
            data = await run.page.screenshot(full_page=True)

        prefix = self._settings.storage.key_prefix.strip("/")
        path_hint = f"{prefix}/{run.context.task_id}/{name}" if prefix else f"{run.context.task_id}/{name}"
        try:
            url = await self._blob_store.upload(data, path_hint)
        except UploadError:
            raise
        except Exception as exc:
            raise UploadError(f"Failed to upload {name}: {_first_line(exc)}") from exc

        run.screenshots.append(ScreenshotRef(name=name, url=url))
        return StepOutcome.ok(url)

    async def _scroll(self, index: int, step: ScrollRegionStep, run: _TaskRun) -> StepOutcome:
        rounds = await scroll_to_bottom(run.page, step.selector, **self._scroll_options())
        return StepOutcome.ok(f"{rounds} rounds")

    async def _wait_for_network_idle(self, index: int, step: WaitForNetworkIdleStep, run: _TaskRun) -> StepOutcome:
        await run.network.wait_for_idle(step.idle_ms, step.timeout_ms)
        return StepOutcome.ok()

    async def _extract(self, index: int, step: ExtractDataStep, run: _TaskRun) -> StepOutcome:
        outcome = await self._extractor(run.page).extract(step.selector)
        if outcome.ok:
            run.data[step.data_name] = outcome.value or ""
            return StepOutcome.ok(step.data_name)

        run.data[step.data_name] = self._settings.runner.extraction_failed_value
        return StepOutcome.recovered(f"{step.data_name}: {outcome.reason}")

    async def _composite_extract(self, index: int, step: CompositeExtractStep, run: _TaskRun) -> StepOutcome:
        extractor = self._extractor(run.page)
        missing_value = self._settings.runner.composite_missing_value
        text = step.template
        misses: list[str] = []

        for source in step.sources:
            outcome = await extractor.extract(source.selector)
            if outcome.ok:
                value = outcome.value or ""
            else:
                value = missing_value
                misses.append(f"{source.name} ({outcome.reason})")
            text = text.replace("${" + source.name + "}", value)

        run.data[step.data_name] = text
        if misses:
            return StepOutcome.recovered(f"{step.data_name}: missing {', '.join(misses)}")
        return StepOutcome.ok(step.data_name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _wait_visible(page: "Page", selector: str, timeout_ms: int) -> "ElementHandle":
        try:
            element = await page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise ElementNotFoundError(selector, timeout_ms) from exc
        if element is None:
            raise ElementNotFoundError(selector, timeout_ms)
        return element

    async def _wait_visible_or_pause(self, index: int, run: _TaskRun, selector: str, timeout_ms: int) -> "ElementHandle":
        """Wait for *selector*; if a challenge overlay was in the way, wait once more after the resume."""
        try:
            return await self._wait_visible(run.page, selector, timeout_ms)
        except ElementNotFoundError:
            if not await self._checkpoint(index, run):
                raise
        logger.info("Task %s: retrying %r after the challenge was resolved", run.context.task_id, selector)
        return await self._wait_visible(run.page, selector, timeout_ms)

    def _extractor(self, page: "Page") -> DataExtractor:
        return DataExtractor(page, timeout_ms=self._settings.browser.default_timeout_ms)

    def _scroll_options(self) -> dict[str, int]:
        capture = self._settings.capture
        return {
            "delta_px": capture.scroll_delta_px,
            "pause_ms": capture.scroll_pause_ms,
            "stable_rounds": capture.stable_rounds,
            "max_rounds": capture.max_scroll_rounds,
        }

    async def _checkpoint(self, index: int, run: _TaskRun) -> bool:
        """Pause on a visible challenge. Returns ``True`` if the task was paused and resumed."""
        if self._coordinator is None:
            return False
        started = time.monotonic()
        paused = await self._coordinator.checkpoint(
            run.context.task_id,
            run.page,
            step_index=index,
            total_steps=run.total,
        )
        if paused:
            run.paused_sec += time.monotonic() - started
        return paused

    async def _emit(self, task_id: str, status: ProgressStatus, step_index: int, total: int, message: str) -> None:
        await publish_progress(
            self._progress, task_id, status, step_index=step_index, total_steps=total, message=message
        )

"""Pause/resume coordination for tasks blocked by a challenge overlay.

The interpreter calls :meth:`InterruptCoordinator.checkpoint` after page loads
and clicks, and again when an awaited element fails to appear. If a
challenge is showing, the task suspends on a future keyed by its task id
until an operator asks to resume it. A resume request is only honoured when
the overlay is no longer visible; otherwise it is refused and the task stays
paused. A pause that is never resumed fails the task after ``pause_timeout_sec``.

Every paused task is independent: resuming one never affects another.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pagerun.exceptions import ChallengeTimeoutError
from pagerun.interrupt.detector import ChallengeDetection, ChallengeDetector
from pagerun.monitoring.event_bus import ProgressStatus, publish_progress

if TYPE_CHECKING:
    from pagerun.monitoring.event_bus import ProgressChannel

logger = logging.getLogger(__name__)


@dataclass
class PauseHandle:
    """A suspended task waiting for a resume signal."""

    task_id: str
    page: Any
    future: "asyncio.Future[None]"
    step_index: int = 0
    total_steps: int = 0
    detection: ChallengeDetection | None = None
    paused_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class ResumeResult:
    """Answer to a resume request.

    ``reason`` is empty when accepted, otherwise ``not_paused`` or
    ``challenge_still_visible``.
    """

    accepted: bool
    reason: str = ""


class InterruptCoordinator:
    """Track paused tasks and release them on verified resume requests.

    Args:
        detector: Used both to trigger pauses and to verify resume requests.
        progress: Optional channel receiving ``paused``/``running`` events.
        pause_timeout_sec: How long a task may stay paused.
    """

    def __init__(
        self,
        detector: ChallengeDetector,
        *,
        progress: "ProgressChannel | None" = None,
        pause_timeout_sec: float = 900.0,
    ) -> None:
        self._detector = detector
        self._progress = progress
        self.pause_timeout_sec = pause_timeout_sec
        self._handles: dict[str, PauseHandle] = {}

    # ------------------------------------------------------------------
    # Task side
    # ------------------------------------------------------------------

    async def checkpoint(self, task_id: str, page: Any, *, step_index: int = 0, total_steps: int = 0) -> bool:
        """Pause *task_id* if a challenge is showing on *page*.

        Returns:
            ``True`` if the task was paused (and has since been resumed).

        Raises:
            ChallengeTimeoutError: If the pause is not resumed in time.
        """
        detection = await self._detector.inspect(page)
        if not detection.detected:
            return False
        await self.pause(task_id, page, step_index=step_index, total_steps=total_steps, detection=detection)
        return True

    async def pause(
        self,
        task_id: str,
        page: Any,
        *,
        step_index: int = 0,
        total_steps: int = 0,
        detection: ChallengeDetection | None = None,
    ) -> None:
        """Suspend the calling task until :meth:`resume` accepts a request.

        Raises:
            RuntimeError: If *task_id* is already paused.
            ChallengeTimeoutError: If the pause is not resumed in time.
        """
        if task_id in self._handles:
            raise RuntimeError(f"Task {task_id} is already paused")

        handle = PauseHandle(
            task_id=task_id,
            page=page,
            future=asyncio.get_running_loop().create_future(),
            step_index=step_index,
            total_steps=total_steps,
            detection=detection,
        )
        self._handles[task_id] = handle
        selector = detection.selector if detection else ""
        logger.warning(
            "Task %s paused at step %d/%d: challenge %s is visible",
            task_id,
            step_index + 1,
            total_steps,
            selector or "overlay",
        )
        await self._emit(
            task_id,
            ProgressStatus.PAUSED,
            step_index,
            total_steps,
            "Verification challenge detected; waiting for an operator to resolve it",
        )

        try:
            await asyncio.wait_for(handle.future, timeout=self.pause_timeout_sec)
        except asyncio.TimeoutError:
            logger.error("Task %s was not resumed within %gs", task_id, self.pause_timeout_sec)
            raise ChallengeTimeoutError(task_id, self.pause_timeout_sec) from None
        finally:
            if self._handles.get(task_id) is handle:
                del self._handles[task_id]

    def cancel(self, task_id: str) -> bool:
        """Drop the pause of *task_id* without resuming it.

        Returns:
            ``True`` if a pause was dropped.
        """
        handle = self._handles.pop(task_id, None)
        if handle is None:
            return False
        if not handle.future.done():
            handle.future.cancel()
        logger.info("Pause of task %s cancelled", task_id)
        return True

    # ------------------------------------------------------------------
    # Operator side
    # ------------------------------------------------------------------

    async def resume(self, task_id: str) -> ResumeResult:
        """Resume *task_id* if the challenge on its page has been cleared."""
        handle = self._handles.get(task_id)
        if handle is None or handle.future.done():
            return ResumeResult(False, "not_paused")

        if await self._detector.is_active(handle.page):
            logger.info("Resume of task %s refused: challenge still visible", task_id)
            return ResumeResult(False, "challenge_still_visible")

        # the task may have timed out while the page was being checked
        if handle.future.done() or self._handles.get(task_id) is not handle:
            return ResumeResult(False, "not_paused")

        handle.future.set_result(None)
        del self._handles[task_id]
        waited = time.monotonic() - handle.paused_at
        logger.info("Task %s resumed after %.1fs", task_id, waited)
        await self._emit(
            task_id,
            ProgressStatus.RUNNING,
            handle.step_index,
            handle.total_steps,
            "Challenge resolved; resuming",
        )
        return ResumeResult(True)

    def is_paused(self, task_id: str) -> bool:
        """``True`` while *task_id* is waiting for a resume."""
        return task_id in self._handles

    @property
    def paused_tasks(self) -> list[str]:
        """Ids of all currently paused tasks."""
        return list(self._handles)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _emit(self, task_id: str, status: ProgressStatus, step_index: int, total_steps: int, message: str) -> None:
        await publish_progress(
            self._progress, task_id, status, step_index=step_index, total_steps=total_steps, message=message
        )

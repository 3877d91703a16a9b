"""pagerun exception hierarchy.

Every fatal error carries an :class:`ErrorKind` so the interpreter can map it
onto the ``ExecutionError.kind`` field without inspecting message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Error taxonomy surfaced in ``ExecutionResult.error.kind``."""

    NAVIGATION = "navigation"
    ELEMENT_NOT_FOUND = "element_not_found"
    STALE_SESSION = "stale_session"
    EXTRACTION = "extraction"
    COMPOSITING = "compositing"
    UPLOAD = "upload"
    NETWORK_IDLE = "network_idle"
    CHALLENGE_TIMEOUT = "challenge_timeout"
    SESSION = "session"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class PagerunError(Exception):
    """Base exception for all pagerun-specific errors."""

    kind: ErrorKind = ErrorKind.INTERNAL


class SessionLaunchError(PagerunError):
    """Raised when the browser (persistent context) cannot be launched."""

    kind = ErrorKind.SESSION


class StaleSessionError(PagerunError):
    """Raised when an operation targets a page or browser that is already closed."""

    kind = ErrorKind.STALE_SESSION


class NavigationError(PagerunError):
    """Raised when a navigation does not complete within its budget."""

    kind = ErrorKind.NAVIGATION


class ElementNotFoundError(PagerunError):
    """Raised when a selector never becomes visible within its budget.

    Attributes:
        selector: The selector that was waited on.
    """

    kind = ErrorKind.ELEMENT_NOT_FOUND

    def __init__(self, selector: str, timeout_ms: int | None = None) -> None:
        self.selector = selector
        self.timeout_ms = timeout_ms
        budget = f" within {timeout_ms}ms" if timeout_ms is not None else ""
        super().__init__(f"Element not visible{budget}: {selector}")


class NetworkIdleTimeout(PagerunError):
    """Raised when the network never goes quiet within the upper bound."""

    kind = ErrorKind.NETWORK_IDLE

    def __init__(self, idle_ms: int, timeout_ms: int) -> None:
        self.idle_ms = idle_ms
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Network did not stay idle for {idle_ms}ms within {timeout_ms}ms"
        )


class CompositingError(PagerunError):
    """Raised when a stitched capture cannot be composited (no usable tiles)."""

    kind = ErrorKind.COMPOSITING


class UploadError(PagerunError):
    """Raised when the blob store rejects a write."""

    kind = ErrorKind.UPLOAD


class ChallengeTimeoutError(PagerunError):
    """Raised when a paused task is not resumed before the pause timeout.

    Attributes:
        task_id: The paused task.
        timeout_sec: The configured pause timeout.
    """

    kind = ErrorKind.CHALLENGE_TIMEOUT

    def __init__(self, task_id: str, timeout_sec: float) -> None:
        self.task_id = task_id
        self.timeout_sec = timeout_sec
        super().__init__(
            f"Task {task_id} was not resumed within {timeout_sec:g}s of pausing on a challenge"
        )


class WorkflowTimeoutError(PagerunError):
    """Raised when a workflow exceeds its wall-clock budget."""

    kind = ErrorKind.TIMEOUT


class WorkflowNotFoundError(PagerunError):
    """Raised when a workflow id is not registered."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class WorkflowDisabledError(PagerunError):
    """Raised when execution of a disabled workflow is requested."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow is disabled: {workflow_id}")


class BatchLimitError(PagerunError):
    """Raised when a batch request exceeds the configured batch size."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Batch size {size} exceeds the limit of {limit}")

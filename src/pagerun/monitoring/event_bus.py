"""Event bus — decouples the interpreter from progress consumers.

* One-way push contract: producers call ``publish(task_id, event)``; the
  core never reads the channel back.
* Multiple sink pattern: the bus fans each event out to every registered
  ``EventSink`` (logger, JSONL stream, webhook, WebSocket, snapshot store).
* Fire-and-forget: a failing sink is logged and skipped, never propagated.
* ``ProgressStore`` keeps the latest event per task id (last write wins)
  so late-joining clients receive the current state immediately.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Progress event model
# ---------------------------------------------------------------------------


class ProgressStatus(str, Enum):
    """Task status carried by a progress event."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED_STATUSES = frozenset({ProgressStatus.COMPLETED, ProgressStatus.FAILED})


class ProgressEvent(BaseModel):
    """Structured progress event for one task."""

    task_id: str
    status: ProgressStatus
    current_step_index: int = 0
    total_steps: int = 0
    message: str = ""
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_jsonl(self) -> str:
        """Serialize to a single JSON line (no trailing newline)."""
        return self.model_dump_json()


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ProgressChannel(Protocol):
    """Anything that accepts progress events for a task."""

    async def publish(self, task_id: str, event: ProgressEvent) -> None:
        """Deliver one event. Must not raise."""
        ...


@runtime_checkable
class EventSink(Protocol):
    """Protocol for event consumers.

    Implementations may write to JSONL files, WebSocket connections,
    structured loggers, or in-memory buffers for testing.
    """

    async def handle_event(self, event: ProgressEvent) -> None:
        """Process a single event."""
        ...


# ---------------------------------------------------------------------------
# Built-in sinks
# ---------------------------------------------------------------------------


class LoggingSink:
    """Emit events to the Python logger at DEBUG level."""

    def __init__(self, logger_name: str = "pagerun.events") -> None:
        self._logger = logging.getLogger(logger_name)

    async def handle_event(self, event: ProgressEvent) -> None:
        """Log the event."""
        self._logger.debug(
            "[%s] %s %d/%d: %s",
            event.task_id or "?",
            event.status.value,
            event.current_step_index,
            event.total_steps,
            event.message[:200],
        )


class InMemorySink:
    """Collect events in a list — useful for testing."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    async def handle_event(self, event: ProgressEvent) -> None:
        """Append the event to the in-memory list."""
        self.events.append(event)

    def clear(self) -> None:
        """Clear all collected events."""
        self.events.clear()

    def statuses(self, task_id: str | None = None) -> list[ProgressStatus]:
        """Return the status sequence, optionally for a single task."""
        return [e.status for e in self.events if task_id is None or e.task_id == task_id]

    @property
    def count(self) -> int:
        """Return the number of collected events."""
        return len(self.events)


class JsonlSink:
    """Write events as JSONL lines to a file-like object.

    Works with ``sys.stdout``, ``sys.stderr``, or an open file handle.
    """

    def __init__(self, stream: Any) -> None:
        self._stream = stream

    async def handle_event(self, event: ProgressEvent) -> None:
        """Write one JSON line to the stream."""
        self._stream.write(event.to_jsonl() + "\n")
        if hasattr(self._stream, "flush"):
            self._stream.flush()


class ProgressStore:
    """Latest progress event per task id (last write wins).

    At most *max_entries* tasks are kept; beyond that the least recently
    updated finished tasks are dropped. Running and paused tasks are kept.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self.max_entries = max_entries
        self._latest: OrderedDict[str, ProgressEvent] = OrderedDict()

    async def handle_event(self, event: ProgressEvent) -> None:
        """Replace the stored event for the event's task."""
        self._latest[event.task_id] = event
        self._latest.move_to_end(event.task_id)
        self._evict()

    def get(self, task_id: str) -> ProgressEvent | None:
        """Return the latest event for *task_id*, or ``None``."""
        return self._latest.get(task_id)

    def all(self) -> dict[str, ProgressEvent]:
        """Return a copy of the latest event for every task."""
        return dict(self._latest)

    def forget(self, task_id: str) -> None:
        """Drop the stored event for *task_id*."""
        self._latest.pop(task_id, None)

    def _evict(self) -> None:
        excess = len(self._latest) - self.max_entries
        if excess <= 0:
            return
        finished = [tid for tid, event in self._latest.items() if event.status in FINISHED_STATUSES]
        for tid in finished[:excess]:
            del self._latest[tid]


class WebhookSink:
    """POST each event as JSON to an external delivery endpoint.

    Delivery is at-most-once per call; failures are logged and dropped.

    Args:
        url: Endpoint that receives ``{"task_id": ..., "event": {...}}``.
        timeout_sec: Per-request timeout.
        client: Optional pre-built ``httpx.AsyncClient`` (for tests).
    """

    def __init__(self, url: str, *, timeout_sec: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._timeout = timeout_sec
        self._client = client

    async def handle_event(self, event: ProgressEvent) -> None:
        """Post the event to the webhook URL."""
        body = {"task_id": event.task_id, "event": json.loads(event.to_jsonl())}
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=body, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._url, json=body)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Progress webhook POST failed (%s): %s", self._url, exc)


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class EventBus:
    """Central progress dispatcher implementing ``ProgressChannel``.

    Sinks are registered with ``add_sink``; a sink may be scoped to a
    single task id, which is how per-client WebSocket streams subscribe.
    """

    def __init__(self) -> None:
        self._sinks: list[tuple[EventSink, str | None]] = []

    # ------------------------------------------------------------------
    # Sink management
    # ------------------------------------------------------------------

    def add_sink(self, sink: EventSink, *, task_id: str | None = None) -> None:
        """Register an event sink, optionally only for events of *task_id*."""
        self._sinks.append((sink, task_id))

    def remove_sink(self, sink: EventSink) -> None:
        """Remove a previously registered sink."""
        self._sinks = [(s, t) for s, t in self._sinks if s is not sink]

    @property
    def sink_count(self) -> int:
        """Return the number of registered sinks."""
        return len(self._sinks)

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, task_id: str, event: ProgressEvent) -> None:
        """Deliver *event* to every sink subscribed to *task_id*."""
        if event.task_id != task_id:
            event = event.model_copy(update={"task_id": task_id})

        for sink, scope in list(self._sinks):
            if scope is not None and scope != task_id:
                continue
            try:
                await sink.handle_event(event)
            except Exception as exc:
                logger.warning("EventBus sink error (%s): %s", type(sink).__name__, exc)


# ---------------------------------------------------------------------------
# Producer helper
# ---------------------------------------------------------------------------


async def publish_progress(
    channel: ProgressChannel | None,
    task_id: str,
    status: ProgressStatus,
    *,
    step_index: int = 0,
    total_steps: int = 0,
    message: str = "",
) -> None:
    """Build a ``ProgressEvent`` and publish it on *channel*.

    A missing channel is a no-op and a failing one is logged, so producers
    never fail a task because progress could not be delivered.
    """
    if channel is None:
        return
    event = ProgressEvent(
        task_id=task_id,
        status=status,
        current_step_index=step_index,
        total_steps=total_steps,
        message=message,
    )
    try:
        await channel.publish(task_id, event)
    except Exception as exc:
        logger.warning("Progress publish failed for %s: %s", task_id, exc)

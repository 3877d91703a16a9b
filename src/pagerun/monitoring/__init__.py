"""Progress monitoring: event bus, sinks and the per-task progress snapshot.

Usage::

    from pagerun.monitoring import EventBus, LoggingSink, ProgressStatus, publish_progress

    bus = EventBus()
    bus.add_sink(LoggingSink())
    await publish_progress(bus, "task-1", ProgressStatus.RUNNING, step_index=0, total_steps=4)
"""

from pagerun.monitoring.event_bus import (
    EventBus,
    EventSink,
    InMemorySink,
    JsonlSink,
    LoggingSink,
    ProgressChannel,
    ProgressEvent,
    ProgressStatus,
    ProgressStore,
    WebhookSink,
    publish_progress,
)

__all__ = [
    "EventBus",
    "EventSink",
    "InMemorySink",
    "JsonlSink",
    "LoggingSink",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressStatus",
    "ProgressStore",
    "WebhookSink",
    "publish_progress",
]

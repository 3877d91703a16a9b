"""WebSocket endpoint for live task progress and remote resume.

``/ws/progress/{task_id}``:

* on connect, the client receives ``{"type": "snapshot", "data": ...}`` with
  the latest progress event of the task (``null`` if none yet);
* afterwards every progress event of that task is pushed as one JSON text
  frame;
* the client may send ``"ping"`` (answered with ``"pong"``) or
  ``{"action": "resume"}``, answered with
  ``{"type": "resume_ack", "accepted": ..., "reason": ...}``.
"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from pagerun.monitoring.event_bus import ProgressEvent

logger = logging.getLogger(__name__)

ws_router = APIRouter(tags=["websocket"])

_KEEPALIVE_SEC = 30.0


class WebSocketSink:
    """Forwards progress events to a WebSocket client."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._closed = False

    async def handle_event(self, event: ProgressEvent) -> None:
        """Send event JSON to the WebSocket client."""
        if self._closed:
            return
        try:
            await self._ws.send_text(event.to_jsonl())
        except Exception:
            self._closed = True

    @property
    def closed(self) -> bool:
        """Whether the WebSocket connection has been closed."""
        return self._closed


@ws_router.websocket("/ws/progress/{task_id}")
async def ws_progress(websocket: WebSocket, task_id: str) -> None:
    """Stream progress events of *task_id* and accept resume requests."""
    await websocket.accept()

    service = getattr(websocket.app.state, "service", None)
    if service is None or (service.get_task(task_id) is None and service.progress_store.get(task_id) is None):
        await websocket.send_json({"error": "task_not_found", "task_id": task_id})
        await websocket.close(code=4004, reason="Task not found")
        return

    snapshot = service.progress_store.get(task_id)
    await websocket.send_json(
        {"type": "snapshot", "data": snapshot.model_dump(mode="json") if snapshot else None}
    )

    sink = WebSocketSink(websocket)
    service.bus.add_sink(sink, task_id=task_id)

    try:
        while not sink.closed:
            try:
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=_KEEPALIVE_SEC)
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "keepalive"})
                except Exception:
                    break
                continue

            if raw == "ping":
                await websocket.send_text("pong")
                continue

            try:
                message = json.loads(raw)
            except json.JSONDecodeError as exc:
                await websocket.send_json({"error": "invalid_message", "detail": str(exc)})
                continue

            if isinstance(message, dict) and message.get("action") == "resume":
                result = await service.resume(task_id)
                await websocket.send_json(
                    {"type": "resume_ack", "task_id": task_id, "accepted": result.accepted, "reason": result.reason}
                )
                logger.info("Resume via WebSocket for %s: accepted=%s", task_id, result.accepted)
            else:
                await websocket.send_json({"error": "unknown_action", "detail": str(message)[:200]})
    except WebSocketDisconnect:
        pass
    finally:
        service.bus.remove_sink(sink)
        logger.debug("Progress client disconnected from %s", task_id)

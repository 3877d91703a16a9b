"""Request-scoped access to the application's automation service."""

from __future__ import annotations

from fastapi import HTTPException, Request

from pagerun.service import AutomationService


def get_service(request: Request) -> AutomationService:
    """Return the service attached to the application state."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Automation service is not running.")
    return service

"""FastAPI app for pagerun — task execution API and progress stream."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pagerun.api.routes import router
from pagerun.api.workflow_routes import workflow_router
from pagerun.api.ws_routes import ws_router
from pagerun.logging_setup import configure_logging
from pagerun.service import AutomationService, build_service
from pagerun.settings import get_settings

try:
    from importlib.metadata import version

    VERSION = version("pagerun")
except Exception:
    VERSION = "0.0.0"

logger = logging.getLogger(__name__)


def create_app(service: AutomationService | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    Args:
        service: Pre-built service (tests). When omitted, logging is configured
            and a service is built from settings on startup, then shut down on exit.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        owned = application.state.service is None
        if owned:
            configure_logging()
            application.state.service = build_service(get_settings())
            application.state.service.load_workflows()
        try:
            yield
        finally:
            if owned:
                await application.state.service.shutdown()
                application.state.service = None

    application = FastAPI(
        title="pagerun",
        description="Declarative browser workflows: extraction, long captures and challenge pauses.",
        version=VERSION,
        lifespan=lifespan,
    )
    application.state.service = service

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    application.include_router(workflow_router)
    application.include_router(ws_router)
    return application


app = create_app()

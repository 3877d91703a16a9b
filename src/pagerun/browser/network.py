"""Network-idle detection from page request events.

Playwright's ``networkidle`` load state only applies to navigations; a
scroll-triggered lazy load needs its own notion of "quiet". The monitor
counts in-flight requests from the ``request`` / ``requestfinished`` /
``requestfailed`` events and records the time of the last change.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from pagerun.exceptions import NetworkIdleTimeout

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)


class NetworkIdleMonitor:
    """Tracks request activity on one page.

    Attach it right after the page is opened so requests started before the
    first wait are counted.
    """

    def __init__(self, page: "Page", *, poll_ms: int = 50) -> None:
        self._page = page
        self._poll_sec = poll_ms / 1000
        self._inflight: set[Any] = set()
        self._last_activity = time.monotonic()
        self._attached = False

    @property
    def inflight(self) -> int:
        """Number of requests currently outstanding."""
        return len(self._inflight)

    def attach(self) -> None:
        """Start listening to request events."""
        if self._attached:
            return
        self._page.on("request", self._on_request)
        self._page.on("requestfinished", self._on_done)
        self._page.on("requestfailed", self._on_done)
        self._last_activity = time.monotonic()
        self._attached = True

    def detach(self) -> None:
        """Stop listening to request events."""
        if not self._attached:
            return
        for event, handler in (
            ("request", self._on_request),
            ("requestfinished", self._on_done),
            ("requestfailed", self._on_done),
        ):
            try:
                self._page.remove_listener(event, handler)
            except Exception as exc:
                logger.debug("Could not remove %s listener: %s", event, exc)
        self._inflight.clear()
        self._attached = False

    async def wait_for_idle(self, idle_ms: int, timeout_ms: int) -> None:
        """Return once no request has been in flight for *idle_ms*.

        Raises:
            NetworkIdleTimeout: If no such quiet window occurs within *timeout_ms*.
        """
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            now = time.monotonic()
            if not self._inflight and (now - self._last_activity) * 1000 >= idle_ms:
                return
            if now >= deadline:
                logger.debug("Network still busy (%d in flight) after %dms", len(self._inflight), timeout_ms)
                raise NetworkIdleTimeout(idle_ms, timeout_ms)
            await asyncio.sleep(self._poll_sec)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_request(self, request: Any) -> None:
        self._inflight.add(request)
        self._last_activity = time.monotonic()

    def _on_done(self, request: Any) -> None:
        self._inflight.discard(request)
        self._last_activity = time.monotonic()

"""Browser session manager — one persistent profile, one page per task.

Wraps a Playwright persistent context so cookies and local storage survive
across runs (a login performed once stays valid for later tasks). The
context is launched lazily on the first ``acquire`` and shared by every
task; each task gets its own ``Page``.

Lifecycle:

* ``acquire()`` launches the context if needed, then opens a fresh page.
* ``release(page)`` closes that page and never raises.
* When the context closes or the browser disconnects, the handle is cleared
  and registered disconnect observers are notified, so the next ``acquire``
  relaunches instead of reusing a dead handle.
* ``close()`` shuts the context and the Playwright driver down.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from playwright.async_api import Error as PlaywrightError

from pagerun.exceptions import SessionLaunchError, StaleSessionError

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Page, Playwright

    from pagerun.settings import Settings

logger = logging.getLogger(__name__)

# launcher(user_data_dir, **options) -> BrowserContext
Launcher = Callable[..., Awaitable["BrowserContext"]]


class SessionManager:
    """Owns the shared browser context and hands out isolated pages.

    Args:
        profile_dir: Directory holding the persistent user profile.
        headless: Launch without a visible window.
        executable_path: Optional explicit browser binary.
        channel: Optional Playwright channel (``chrome``, ``msedge``).
        viewport: ``(width, height)`` of every page.
        launch_args: Extra command-line flags for the browser.
        default_timeout_ms: Default timeout applied to every new page.
        navigation_timeout_ms: Default navigation timeout for every new page.
        launcher: Override for launching the context (tests inject fakes).
    """

    def __init__(
        self,
        profile_dir: Path | str,
        *,
        headless: bool = True,
        executable_path: str = "",
        channel: str = "",
        viewport: tuple[int, int] = (1920, 1080),
        launch_args: list[str] | None = None,
        default_timeout_ms: int = 15_000,
        navigation_timeout_ms: int = 60_000,
        launcher: Launcher | None = None,
    ) -> None:
        self.profile_dir = Path(profile_dir)
        self.headless = headless
        self.executable_path = executable_path
        self.channel = channel
        self.viewport = viewport
        self.launch_args = list(launch_args or [])
        self.default_timeout_ms = default_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms

        self._launcher = launcher
        self._playwright: Playwright | None = None
        self._context: BrowserContext | None = None
        self._lock = asyncio.Lock()
        self._observers: list[Callable[[], None]] = []

    @classmethod
    def from_settings(cls, settings: "Settings", *, headless: bool | None = None) -> "SessionManager":
        """Build a manager from the ``browser`` settings section."""
        b = settings.browser
        return cls(
            b.profile_dir,
            headless=b.headless if headless is None else headless,
            executable_path=b.executable_path,
            channel=b.channel,
            viewport=(b.viewport_width, b.viewport_height),
            launch_args=b.launch_args,
            default_timeout_ms=b.default_timeout_ms,
            navigation_timeout_ms=b.navigation_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_live(self) -> bool:
        """``True`` while a launched context is held."""
        return self._context is not None

    def add_disconnect_observer(self, callback: Callable[[], None]) -> None:
        """Register *callback* to run whenever the browser goes away."""
        self._observers.append(callback)

    async def acquire(self) -> "Page":
        """Return a fresh page on the shared context, launching it if needed.

        Raises:
            SessionLaunchError: If the browser cannot be launched.
            StaleSessionError: If the context died between launch and page creation.
        """
        async with self._lock:
            context = self._context
            if context is None:
                context = await self._launch()

        try:
            page = await context.new_page()
        except PlaywrightError as exc:
            self._drop_context("new_page failed")
            raise StaleSessionError(f"Browser context is no longer usable: {exc}") from exc

        page.set_default_timeout(self.default_timeout_ms)
        page.set_default_navigation_timeout(self.navigation_timeout_ms)
        logger.debug("Acquired page (%d open)", len(context.pages))
        return page

    async def release(self, page: "Page | None") -> None:
        """Close *page*. Closing an already closed page is a no-op."""
        if page is None:
            return
        try:
            if not page.is_closed():
                await page.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing page: %s", exc)

    async def close(self) -> None:
        """Close the browser context and stop the Playwright driver."""
        async with self._lock:
            context = self._context
            if context is not None:
                try:
                    await context.close()
                except Exception as exc:
                    logger.warning("Error closing browser context: %s", exc)
                self._drop_context("closed by owner")

            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as exc:
                    logger.warning("Error stopping Playwright: %s", exc)
                self._playwright = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _launch(self) -> "BrowserContext":
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        options: dict[str, Any] = {
            "headless": self.headless,
            "viewport": {"width": self.viewport[0], "height": self.viewport[1]},
            "args": self.launch_args,
        }
        if self.executable_path:
            options["executable_path"] = self.executable_path
        if self.channel:
            options["channel"] = self.channel

        logger.info("Launching browser (profile=%s, headless=%s)", self.profile_dir, self.headless)
        try:
            launcher = self._launcher or self._launch_playwright
            context = await launcher(str(self.profile_dir), **options)
        except Exception as exc:
            logger.error("Browser launch failed: %s", exc)
            raise SessionLaunchError(f"Could not launch browser: {exc}") from exc

        context.on("close", self._on_context_closed)
        self._context = context
        return context

    async def _launch_playwright(self, user_data_dir: str, **options: Any) -> "BrowserContext":
        from playwright.async_api import async_playwright

        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch_persistent_context(user_data_dir, **options)

    def _on_context_closed(self, *_: object) -> None:
        self._drop_context("browser disconnected")

    def _drop_context(self, reason: str) -> None:
        if self._context is None:
            return
        logger.warning("Browser session ended: %s", reason)
        self._context = None
        for callback in list(self._observers):
            try:
                callback()
            except Exception as exc:
                logger.warning("Disconnect observer failed: %s", exc)

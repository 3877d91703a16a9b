"""pagerun test configuration — shared fixtures and browser fakes."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

FIXTURES_DIR = Path(__file__).parent / "fixtures"
WORKFLOWS_DIR = FIXTURES_DIR / "workflows"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Clear the settings LRU cache between tests."""
    from pagerun.settings.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Settings with every writable path under *tmp_path* and short timeouts."""
    monkeypatch.delenv("PAGERUN_ENV", raising=False)
    from pagerun.settings.config import Settings

    return Settings(
        browser={"profile_dir": str(tmp_path / "profile"), "default_timeout_ms": 500},
        runner={"workflow_dir": str(WORKFLOWS_DIR), "ready_timeout_ms": 500},
        capture={"scroll_pause_ms": 0},
        storage={"backend": "local", "local_dir": str(tmp_path / "blobs")},
        challenge={"pause_timeout_sec": 5},
    )


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def png_bytes(width: int, height: int, color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    """Return a solid-colour PNG."""
    buf = BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def make_png() -> Callable[..., bytes]:
    return png_bytes


# ---------------------------------------------------------------------------
# Browser fakes
# ---------------------------------------------------------------------------


class FakeElement:
    """Minimal stand-in for a Playwright ``ElementHandle``."""

    def __init__(self, text: str = "", *, shot: bytes = b"element-png", box: dict[str, float] | None = None) -> None:
        self.text = text
        self.screenshot = AsyncMock(return_value=shot)
        self.click = AsyncMock()
        self._box = box if box is not None else {"x": 0, "y": 0, "width": 100, "height": 50}

    async def text_content(self) -> str:
        return self.text

    async def bounding_box(self) -> dict[str, float]:
        return self._box


class FakePage:
    """Minimal stand-in for a Playwright ``Page``.

    ``elements`` maps a selector to the element returned once it is
    "visible"; any other selector times out. ``evaluate`` may be replaced
    with an ``AsyncMock`` whose side effect dispatches on the script.
    """

    def __init__(self, elements: dict[str, FakeElement] | None = None, *, url: str = "https://example.test/") -> None:
        self.elements = dict(elements or {})
        self.url = url
        self.goto = AsyncMock()
        self.click = AsyncMock()
        self.screenshot = AsyncMock(return_value=b"page-png")
        self.evaluate = AsyncMock(return_value=None)
        self.mouse = MagicMock()
        self.mouse.wheel = AsyncMock()
        self.mouse.move = AsyncMock()
        self.listeners: dict[str, list[Callable[..., Any]]] = {}
        self.default_timeout: int | None = None
        self._closed = False

    def is_closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        handlers = self.listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self.listeners.get(event, [])):
            handler(payload)

    def set_default_timeout(self, timeout: int) -> None:
        self.default_timeout = timeout

    def set_default_navigation_timeout(self, timeout: int) -> None:
        pass

    async def wait_for_selector(self, selector: str, *, state: str = "visible", timeout: float | None = None):
        element = self.elements.get(selector)
        if element is None:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return element

    async def query_selector(self, selector: str):
        return self.elements.get(selector)


class FakeContext:
    """Stand-in for a persistent ``BrowserContext`` that hands out ``FakePage``s."""

    def __init__(self, page_factory: Callable[[], FakePage] | None = None) -> None:
        self._page_factory = page_factory or FakePage
        self.pages: list[FakePage] = []
        self.handlers: dict[str, list[Callable[..., Any]]] = {}
        self.closed = False

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.handlers.setdefault(event, []).append(handler)

    async def new_page(self) -> FakePage:
        page = self._page_factory()
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True
        for handler in self.handlers.get("close", []):
            handler(self)


@pytest.fixture()
def fake_page_cls() -> type[FakePage]:
    return FakePage


@pytest.fixture()
def fake_element_cls() -> type[FakeElement]:
    return FakeElement


@pytest.fixture()
def fake_context_cls() -> type[FakeContext]:
    return FakeContext


class FakeSessions:
    """Session manager stand-in that always hands out one prepared page."""

    def __init__(self, page: FakePage | None = None, *, error: Exception | None = None) -> None:
        self.page = page or FakePage()
        self.error = error
        self.released: list[FakePage] = []
        self.is_live = page is not None
        self.closed = False

    async def acquire(self) -> FakePage:
        if self.error is not None:
            raise self.error
        return self.page

    async def release(self, page: FakePage) -> None:
        self.released.append(page)
        await page.close()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_sessions_cls() -> type[FakeSessions]:
    return FakeSessions


class MemoryBlobStore:
    """Blob store that keeps uploads in a dict."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}

    async def upload(self, data: bytes, path_hint: str) -> str:
        self.blobs[path_hint] = data
        return f"mem://{path_hint}"


@pytest.fixture()
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


# ---------------------------------------------------------------------------
# Pytest markers
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests that require external services or real I/O")
    config.addinivalue_line("markers", "slow: marks tests that take more than a few seconds")

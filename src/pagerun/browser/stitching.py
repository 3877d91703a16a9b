"""Long capture of a scrollable element by tiling and stitching.

An element whose content is taller than its visible box is captured one
viewport at a time. Between tiles the element is scrolled by
``clientHeight - overlap`` and the network is given a short quiet window
so lazily loaded rows render. Capture stops when a scroll no longer moves
``scrollTop``.

The tiles are then cropped and stacked into one image whose height equals
the element's full ``scrollHeight`` (in device pixels):

* first tile: rows ``[0, step)``
* middle tiles: rows ``[overlap, overlap + step)``
* last tile: the bottom ``remaining`` rows, where ``remaining`` is the
  content height not yet composed

where ``step = clientHeight - overlap``. Every value is scaled by the
device pixel ratio and rounded before cropping.

An element that does not overflow is captured directly (no stitching).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from io import BytesIO
from typing import TYPE_CHECKING, Any, Sequence

from PIL import Image
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagerun.exceptions import CompositingError, ElementNotFoundError, NetworkIdleTimeout

if TYPE_CHECKING:
    from playwright.async_api import ElementHandle, Page

    from pagerun.browser.network import NetworkIdleMonitor

logger = logging.getLogger(__name__)

_METRICS_JS = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    return {
        scrollHeight: el.scrollHeight,
        clientHeight: el.clientHeight,
        scrollTop: el.scrollTop,
        devicePixelRatio: window.devicePixelRatio || 1,
    };
}
"""

_SCROLL_JS = """
([selector, overlap]) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    el.scrollTop += Math.max(1, el.clientHeight - overlap);
    return el.scrollTop;
}
"""


# ---------------------------------------------------------------------------
# Crop planning (pure)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CropRegion:
    """Rows ``[top, top + height)`` of tile ``tile_index`` in device pixels."""

    tile_index: int
    top: int
    height: int


def _round_px(value: float) -> int:
    """Round half up, matching how the browser rounds CSS pixel sizes."""
    return int(math.floor(value + 0.5))


def plan_crops(
    tile_heights: Sequence[int],
    *,
    content_height: float,
    viewport_height: float,
    overlap: float,
    device_pixel_ratio: float = 1.0,
) -> list[CropRegion]:
    """Compute the crop region of every tile.

    Args:
        tile_heights: Pixel height of each captured tile, in capture order.
        content_height: Element ``scrollHeight`` in CSS pixels.
        viewport_height: Element ``clientHeight`` in CSS pixels.
        overlap: Rows shared by consecutive tiles, in CSS pixels.
        device_pixel_ratio: Scale from CSS pixels to image pixels.

    Returns:
        The non-empty crop regions; their heights sum to the composed height.
    """
    dpr = device_pixel_ratio or 1.0
    total_px = _round_px(content_height * dpr)
    client_px = _round_px(viewport_height * dpr)
    overlap_px = _round_px(overlap * dpr)
    step_px = max(1, client_px - overlap_px)

    crops: list[CropRegion] = []
    composed = 0
    last = len(tile_heights) - 1
    for index, tile_height in enumerate(tile_heights):
        if index == last:
            height = total_px - composed
            top = client_px - height
        elif index == 0:
            top, height = 0, step_px
        else:
            top, height = overlap_px, step_px

        top = max(0, top)
        if top + height > tile_height:
            height = tile_height - top
        if height <= 0:
            logger.debug("Skipping tile %d: nothing left to crop", index)
            continue

        crops.append(CropRegion(index, top, height))
        composed += height
    return crops


def stitch_tiles(
    tiles: Sequence[bytes],
    *,
    content_height: float,
    viewport_height: float,
    overlap: float,
    device_pixel_ratio: float = 1.0,
) -> bytes:
    """Crop and stack PNG *tiles* into one PNG.

    Raises:
        CompositingError: If there are no tiles or no tile contributes rows.
    """
    if not tiles:
        raise CompositingError("No tiles were captured")

    images = [Image.open(BytesIO(tile)) for tile in tiles]
    try:
        crops = plan_crops(
            [img.height for img in images],
            content_height=content_height,
            viewport_height=viewport_height,
            overlap=overlap,
            device_pixel_ratio=device_pixel_ratio,
        )
        if not crops:
            raise CompositingError(f"None of the {len(tiles)} tiles contributed any rows")

        width = images[0].width
        canvas = Image.new("RGBA", (width, sum(c.height for c in crops)), (255, 255, 255, 255))
        offset = 0
        for crop in crops:
            img = images[crop.tile_index]
            part = img.crop((0, crop.top, min(width, img.width), crop.top + crop.height))
            canvas.paste(part.convert("RGBA"), (0, offset))
            offset += crop.height

        buf = BytesIO()
        canvas.save(buf, format="PNG")
    finally:
        for img in images:
            img.close()

    logger.info("Stitched %d tiles into %dx%d image", len(crops), canvas.width, canvas.height)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Capture loop
# ---------------------------------------------------------------------------


@dataclass
class _Metrics:
    scroll_height: float
    client_height: float
    scroll_top: float
    device_pixel_ratio: float

    @classmethod
    def from_js(cls, raw: dict[str, Any]) -> "_Metrics":
        return cls(
            scroll_height=float(raw.get("scrollHeight") or 0),
            client_height=float(raw.get("clientHeight") or 0),
            scroll_top=float(raw.get("scrollTop") or 0),
            device_pixel_ratio=float(raw.get("devicePixelRatio") or 1),
        )


@dataclass
class CaptureState:
    """Tiles collected so far for one long capture."""

    selector: str
    tiles: list[bytes] = field(default_factory=list)
    positions: list[float] = field(default_factory=list)


class LongCaptureCompositor:
    """Capture a scrollable element as one image.

    Args:
        page: The page holding the element.
        network: Idle monitor attached to *page*; waited on between tiles.
        overlap_px: Rows shared by consecutive tiles (CSS pixels).
        idle_ms: Quiet window required between tiles.
        idle_timeout_ms: Upper bound on each quiet-window wait (timeouts are ignored).
        max_tiles: Safety cap on the number of tiles.
        timeout_ms: Visibility budget for the element.
    """

    def __init__(
        self,
        page: "Page",
        *,
        network: "NetworkIdleMonitor | None" = None,
        overlap_px: int = 50,
        idle_ms: int = 500,
        idle_timeout_ms: int = 10_000,
        max_tiles: int = 200,
        timeout_ms: int = 15_000,
    ) -> None:
        self._page = page
        self._network = network
        self.overlap_px = overlap_px
        self.idle_ms = idle_ms
        self.idle_timeout_ms = idle_timeout_ms
        self.max_tiles = max_tiles
        self.timeout_ms = timeout_ms

    async def capture(self, selector: str) -> bytes:
        """Return a PNG of the full content of the element under *selector*.

        Raises:
            ElementNotFoundError: If the element never becomes visible.
            CompositingError: If stitching produces no image.
        """
        element = await self._wait_visible(selector)
        metrics = await self._metrics(selector)

        if metrics.scroll_height <= metrics.client_height:
            logger.debug("%s does not overflow; capturing directly", selector)
            return await element.screenshot()

        state = CaptureState(selector)
        while True:
            state.tiles.append(await element.screenshot())
            before = (await self._metrics(selector)).scroll_top
            state.positions.append(before)

            await self._page.evaluate(_SCROLL_JS, [selector, self.overlap_px])
            await self._wait_quiet()

            after = (await self._metrics(selector)).scroll_top
            if after == before:
                break
            if len(state.tiles) >= self.max_tiles:
                logger.warning("Stopping long capture of %s at the %d-tile cap", selector, self.max_tiles)
                break

        final = await self._metrics(selector)
        logger.info(
            "Captured %d tiles of %s (scrollHeight=%g, clientHeight=%g, dpr=%g)",
            len(state.tiles),
            selector,
            final.scroll_height,
            final.client_height,
            final.device_pixel_ratio,
        )
        return stitch_tiles(
            state.tiles,
            content_height=final.scroll_height,
            viewport_height=final.client_height,
            overlap=self.overlap_px,
            device_pixel_ratio=final.device_pixel_ratio,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _wait_visible(self, selector: str) -> "ElementHandle":
        try:
            element = await self._page.wait_for_selector(selector, state="visible", timeout=self.timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise ElementNotFoundError(selector, self.timeout_ms) from exc
        if element is None:
            raise ElementNotFoundError(selector, self.timeout_ms)
        return element

    async def _metrics(self, selector: str) -> _Metrics:
        raw = await self._page.evaluate(_METRICS_JS, selector)
        if raw is None:
            raise ElementNotFoundError(selector)
        return _Metrics.from_js(raw)

    async def _wait_quiet(self) -> None:
        if self._network is None:
            return
        try:
            await self._network.wait_for_idle(self.idle_ms, self.idle_timeout_ms)
        except NetworkIdleTimeout:
            logger.debug("Network not idle between tiles; continuing")

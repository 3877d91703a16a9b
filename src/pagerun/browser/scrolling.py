"""Wheel-driven scrolling for lazily loaded pages.

Scrolls until the viewport stops changing: after every wheel gesture a
viewport capture is compared byte-for-byte with the previous one, and the
loop ends once ``stable_rounds`` consecutive captures are identical (or the
round cap is reached). Scrolling is best-effort and never fails a step.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)


async def _hover_region(page: "Page", selector: str) -> None:
    """Move the mouse over the centre of *selector* so wheel events target it."""
    element = await page.query_selector(selector)
    if element is None:
        logger.debug("Scroll region %s not found; scrolling the page instead", selector)
        return
    box = await element.bounding_box()
    if not box:
        return
    await page.mouse.move(box["x"] + box["width"] / 2, box["y"] + box["height"] / 2)


async def scroll_to_bottom(
    page: "Page",
    selector: str = "",
    *,
    delta_px: int = 800,
    pause_ms: int = 1_500,
    stable_rounds: int = 3,
    max_rounds: int = 60,
) -> int:
    """Scroll *page* (or the region under *selector*) until content stops changing.

    Args:
        page: The page to scroll.
        selector: Optional scrollable region; the mouse is parked over it first.
        delta_px: Vertical wheel delta per gesture.
        pause_ms: Settle time after each gesture.
        stable_rounds: Consecutive identical captures that end the loop.
        max_rounds: Upper bound on wheel gestures.

    Returns:
        The number of wheel gestures performed.
    """
    rounds = 0
    try:
        if selector:
            await _hover_region(page, selector)

        unchanged = 0
        previous: bytes | None = None
        while rounds < max_rounds:
            current = await page.screenshot()
            if previous is not None and current == previous:
                unchanged += 1
                logger.debug("Viewport unchanged (%d/%d)", unchanged, stable_rounds)
                if unchanged >= stable_rounds:
                    break
            else:
                unchanged = 0
            previous = current

            await page.mouse.wheel(0, delta_px)
            await asyncio.sleep(pause_ms / 1000)
            rounds += 1
    except Exception as exc:
        logger.warning("Scrolling stopped early after %d rounds: %s", rounds, exc)

    logger.info("Scrolled %d rounds%s", rounds, f" in {selector}" if selector else "")
    return rounds

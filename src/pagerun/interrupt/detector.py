"""Challenge (CAPTCHA / verification overlay) detection.

A challenge counts as present only when all of the following hold for at
least one element matching a configured container selector:

1. it is rendered: not ``display: none``, not ``visibility: hidden``, not
   fully transparent (itself or an ancestor), and its box has a non-zero
   width and height;
2. its text contains one of the configured keywords, case-insensitively
   (an empty keyword list means visibility alone decides).

An unrelated modal that happens to match a container selector therefore does
not pause the task. Checking a closed or disconnected page reports "no
challenge" rather than raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from playwright.async_api import Page

    from pagerun.settings import Settings

logger = logging.getLogger(__name__)

_CANDIDATES_JS = """
(selectors) => {
    const rendered = (el) => {
        const style = window.getComputedStyle(el);
        if (style.display === 'none' || style.visibility === 'hidden') return false;
        const rect = el.getBoundingClientRect();
        if (rect.width <= 0 || rect.height <= 0) return false;
        for (let node = el; node && node.nodeType === 1; node = node.parentElement) {
            if (parseFloat(window.getComputedStyle(node).opacity || '1') === 0) return false;
        }
        return true;
    };
    const out = [];
    for (const selector of selectors) {
        let nodes;
        try {
            nodes = document.querySelectorAll(selector);
        } catch (e) {
            continue;
        }
        for (const el of nodes) {
            const visible = rendered(el);
            out.push({
                selector,
                visible,
                text: visible ? (el.innerText || el.textContent || '').slice(0, 4000) : '',
            });
        }
    }
    return out;
}
"""


@dataclass
class ChallengeDetection:
    """Result of scanning a page for a challenge overlay.

    ``dismissed_reason`` explains a negative result: ``page_closed``,
    ``page_unavailable``, ``absent``, ``not_visible`` or ``no_keyword``.
    """

    detected: bool = False
    selector: str = ""
    matched_keyword: str = ""
    dismissed_reason: str = ""
    page_url: str = ""


class ChallengeDetector:
    """Decide whether a page currently shows a challenge overlay.

    Args:
        container_selectors: CSS selectors of candidate overlay containers.
        keywords: Text fragments that identify a challenge (case-insensitive).
    """

    def __init__(self, container_selectors: Sequence[str], keywords: Sequence[str] = ()) -> None:
        self.container_selectors = list(container_selectors)
        self.keywords = [k.lower() for k in keywords if k]

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ChallengeDetector":
        return cls(settings.challenge.container_selectors, settings.challenge.keywords)

    async def inspect(self, page: "Page | None") -> ChallengeDetection:
        """Scan *page* and describe what was (or was not) found."""
        if page is None or page.is_closed():
            return ChallengeDetection(dismissed_reason="page_closed")
        if not self.container_selectors:
            return ChallengeDetection(dismissed_reason="absent")

        try:
            candidates: list[dict[str, Any]] = await page.evaluate(_CANDIDATES_JS, self.container_selectors) or []
            page_url = page.url
        except Exception as exc:
            logger.debug("Challenge check skipped, page unavailable: %s", exc)
            return ChallengeDetection(dismissed_reason="page_unavailable")

        visible = [c for c in candidates if c.get("visible")]
        if not visible:
            return ChallengeDetection(
                dismissed_reason="not_visible" if candidates else "absent",
                page_url=page_url,
            )

        for candidate in visible:
            selector = str(candidate.get("selector", ""))
            if not self.keywords:
                logger.info("Challenge detected: %s on %s", selector, page_url)
                return ChallengeDetection(detected=True, selector=selector, page_url=page_url)
            keyword = self._match_keyword(str(candidate.get("text") or ""))
            if keyword:
                logger.info("Challenge detected: %s (%r) on %s", selector, keyword, page_url)
                return ChallengeDetection(
                    detected=True,
                    selector=selector,
                    matched_keyword=keyword,
                    page_url=page_url,
                )

        logger.debug("Visible overlay without challenge keywords on %s; ignoring", page_url)
        return ChallengeDetection(dismissed_reason="no_keyword", page_url=page_url)

    async def is_active(self, page: "Page | None") -> bool:
        """Shorthand for ``(await inspect(page)).detected``."""
        return (await self.inspect(page)).detected

    def _match_keyword(self, text: str) -> str:
        lowered = text.lower()
        for keyword in self.keywords:
            if keyword in lowered:
                return keyword
        return ""

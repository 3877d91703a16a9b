"""Text extraction from selector expressions.

Three expression forms are supported:

``text=ANCHOR >> next >> CHILD``
    Find the *last* element whose whitespace-normalised text contains
    ``ANCHOR``; take its next element sibling (falling back to the parent's
    next sibling); return the text of ``CHILD`` inside it, or of the
    sibling itself when ``CHILD`` matches nothing.

``text=ANCHOR >> CHILD``
    Starting from the deepest anchor match, walk up through its ancestors
    and return the text of the first descendant matching ``CHILD``. Earlier
    anchor matches are tried in turn if the deepest one yields nothing.

anything else
    A plain CSS selector: wait for it to be visible and return its text.

Extraction never raises. A miss is reported as an ``ExtractionOutcome``
with ``value=None`` and a reason, which the interpreter turns into the
configured sentinel value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)


class ExpressionMode(str, Enum):
    """How a selector expression is resolved."""

    DIRECT = "direct"
    NEXT_SIBLING = "next_sibling"
    ANCESTOR = "ancestor"


@dataclass(frozen=True)
class SelectorExpression:
    """A parsed selector expression."""

    mode: ExpressionMode
    raw: str
    selector: str = ""
    anchor_text: str = ""
    child_selector: str = ""


@dataclass(frozen=True)
class ExtractionOutcome:
    """Result of one extraction: a value, or ``None`` with a reason."""

    value: str | None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.value is not None


def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


def parse_expression(expression: str) -> SelectorExpression:
    """Classify *expression* into one of the three extraction modes."""
    expr = expression.strip()
    if not (expr.startswith("text=") and ">>" in expr):
        return SelectorExpression(mode=ExpressionMode.DIRECT, raw=expression, selector=expr)

    head, _, rest = expr.partition(">>")
    anchor = _unquote(head[len("text="):].strip())
    rest = rest.strip()

    if rest.startswith("next"):
        tail = rest[len("next"):].lstrip()
        if tail.startswith(">>"):
            return SelectorExpression(
                mode=ExpressionMode.NEXT_SIBLING,
                raw=expression,
                anchor_text=anchor,
                child_selector=tail[2:].strip(),
            )

    return SelectorExpression(
        mode=ExpressionMode.ANCESTOR,
        raw=expression,
        anchor_text=anchor,
        child_selector=rest,
    )


# ---------------------------------------------------------------------------
# In-page resolvers
# ---------------------------------------------------------------------------

_ANCHOR_MATCHES_JS = """
const norm = (s) => (s || '').replace(/\\s+/g, ' ').trim();
const anchorMatches = (text) =>
    Array.from(document.querySelectorAll('*')).filter((el) => norm(el.textContent).includes(text));
"""

_NEXT_SIBLING_JS = (
    "([text, childSelector]) => {"
    + _ANCHOR_MATCHES_JS
    + """
    const matches = anchorMatches(text);
    if (matches.length === 0) return { error: 'anchor text not found' };
    const anchor = matches[matches.length - 1];
    let sibling = anchor.nextElementSibling;
    if (!sibling && anchor.parentElement) sibling = anchor.parentElement.nextElementSibling;
    if (!sibling) return { error: 'anchor has no next sibling' };
    let target = null;
    if (childSelector) {
        try {
            target = sibling.querySelector(childSelector);
        } catch (e) {
            return { error: 'invalid child selector: ' + String(e) };
        }
    }
    target = target || sibling;
    return { value: (target.textContent || '').trim() };
}"""
)

_ANCESTOR_JS = (
    "([text, childSelector]) => {"
    + _ANCHOR_MATCHES_JS
    + """
    const matches = anchorMatches(text);
    if (matches.length === 0) return { error: 'anchor text not found' };
    for (let i = matches.length - 1; i >= 0; i--) {
        let current = matches[i].parentElement;
        while (current && current !== document.body) {
            let child = null;
            try {
                child = current.querySelector(childSelector);
            } catch (e) {
                return { error: 'invalid child selector: ' + String(e) };
            }
            if (child) return { value: (child.textContent || '').trim() };
            current = current.parentElement;
        }
    }
    return { error: 'no ancestor contains the child selector' };
}"""
)


class DataExtractor:
    """Resolve selector expressions against a page.

    Args:
        page: The page to read from.
        timeout_ms: Visibility budget for direct selectors.
    """

    def __init__(self, page: "Page", *, timeout_ms: int = 15_000) -> None:
        self._page = page
        self._timeout_ms = timeout_ms

    async def extract(self, expression: str) -> ExtractionOutcome:
        """Return the trimmed text addressed by *expression*."""
        parsed = parse_expression(expression)
        try:
            if parsed.mode is ExpressionMode.DIRECT:
                return await self._extract_direct(parsed.selector)
            script = _NEXT_SIBLING_JS if parsed.mode is ExpressionMode.NEXT_SIBLING else _ANCESTOR_JS
            return self._from_script_result(
                await self._page.evaluate(script, [parsed.anchor_text, parsed.child_selector]),
                expression,
            )
        except PlaywrightError as exc:
            logger.warning("Extraction failed for %r: %s", expression, exc)
            first_line = str(exc).splitlines()[0] if str(exc) else type(exc).__name__
            return ExtractionOutcome(None, f"page error: {first_line}")

    async def _extract_direct(self, selector: str) -> ExtractionOutcome:
        if not selector:
            return ExtractionOutcome(None, "empty selector")
        try:
            element = await self._page.wait_for_selector(selector, state="visible", timeout=self._timeout_ms)
        except PlaywrightTimeoutError:
            logger.warning("Element not visible within %dms: %s", self._timeout_ms, selector)
            return ExtractionOutcome(None, f"element not visible within {self._timeout_ms}ms: {selector}")
        if element is None:
            return ExtractionOutcome(None, f"element not found: {selector}")
        text = await element.text_content()
        return ExtractionOutcome((text or "").strip())

    @staticmethod
    def _from_script_result(result: Any, expression: str) -> ExtractionOutcome:
        if isinstance(result, dict) and result.get("value") is not None:
            return ExtractionOutcome(str(result["value"]))
        reason = result.get("error", "no result") if isinstance(result, dict) else "no result"
        logger.warning("Extraction miss for %r: %s", expression, reason)
        return ExtractionOutcome(None, reason)

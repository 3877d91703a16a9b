"""Unit tests for selector-expression parsing and text extraction."""

from __future__ import annotations

import pytest
from playwright.async_api import Error as PlaywrightError

from pagerun.browser.extraction import DataExtractor, ExpressionMode, parse_expression


class TestParseExpression:
    def test_plain_css_is_direct(self) -> None:
        parsed = parse_expression("  .followers span ")
        assert parsed.mode is ExpressionMode.DIRECT
        assert parsed.selector == ".followers span"

    def test_text_without_chain_is_direct(self) -> None:
        assert parse_expression("text=Followers").mode is ExpressionMode.DIRECT

    def test_next_sibling_form(self) -> None:
        parsed = parse_expression('text="Video views" >> next >> .value')
        assert parsed.mode is ExpressionMode.NEXT_SIBLING
        assert parsed.anchor_text == "Video views"
        assert parsed.child_selector == ".value"

    def test_ancestor_form(self) -> None:
        parsed = parse_expression("text=Likes >> span.count")
        assert parsed.mode is ExpressionMode.ANCESTOR
        assert parsed.anchor_text == "Likes"
        assert parsed.child_selector == "span.count"

    def test_selector_starting_with_next_word_is_ancestor(self) -> None:
        parsed = parse_expression("text=Likes >> nextgen-badge")
        assert parsed.mode is ExpressionMode.ANCESTOR
        assert parsed.child_selector == "nextgen-badge"


class TestDataExtractor:
    @pytest.mark.anyio
    async def test_direct_returns_trimmed_text(self, fake_page_cls, fake_element_cls) -> None:
        page = fake_page_cls({".followers": fake_element_cls("  12.5K \n")})
        outcome = await DataExtractor(page, timeout_ms=100).extract(".followers")
        assert outcome.ok
        assert outcome.value == "12.5K"

    @pytest.mark.anyio
    async def test_direct_timeout_is_a_miss(self, fake_page_cls) -> None:
        outcome = await DataExtractor(fake_page_cls(), timeout_ms=100).extract(".views")
        assert not outcome.ok
        assert outcome.reason == "element not visible within 100ms: .views"

    @pytest.mark.anyio
    async def test_next_sibling_passes_anchor_and_child(self, fake_page_cls) -> None:
        page = fake_page_cls()
        page.evaluate.return_value = {"value": "3,201"}

        outcome = await DataExtractor(page).extract("text=Views >> next >> span")

        assert outcome.value == "3,201"
        args = page.evaluate.await_args.args
        assert args[1] == ["Views", "span"]

    @pytest.mark.anyio
    async def test_script_error_is_a_miss(self, fake_page_cls) -> None:
        page = fake_page_cls()
        page.evaluate.return_value = {"error": "anchor text not found"}

        outcome = await DataExtractor(page).extract("text=Missing >> span")

        assert outcome.value is None
        assert outcome.reason == "anchor text not found"

    @pytest.mark.anyio
    async def test_page_error_never_raises(self, fake_page_cls) -> None:
        page = fake_page_cls()
        page.evaluate.side_effect = PlaywrightError("Execution context was destroyed\nstack")

        outcome = await DataExtractor(page).extract("text=Views >> next >> span")

        assert outcome.value is None
        assert outcome.reason == "page error: Execution context was destroyed"

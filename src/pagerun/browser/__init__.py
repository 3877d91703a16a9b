"""Browser primitives: session lifecycle, extraction, scrolling and long capture."""

from pagerun.browser.extraction import (
    DataExtractor,
    ExpressionMode,
    ExtractionOutcome,
    SelectorExpression,
    parse_expression,
)
from pagerun.browser.network import NetworkIdleMonitor
from pagerun.browser.scrolling import scroll_to_bottom
from pagerun.browser.session import SessionManager
from pagerun.browser.stitching import CropRegion, LongCaptureCompositor, plan_crops, stitch_tiles

__all__ = [
    "CropRegion",
    "DataExtractor",
    "ExpressionMode",
    "ExtractionOutcome",
    "LongCaptureCompositor",
    "NetworkIdleMonitor",
    "SelectorExpression",
    "SessionManager",
    "parse_expression",
    "plan_crops",
    "scroll_to_bottom",
    "stitch_tiles",
]

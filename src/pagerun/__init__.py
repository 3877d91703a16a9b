"""pagerun — declarative browser workflow runner with data extraction and long captures."""

from __future__ import annotations

try:
    from importlib.metadata import version

    __version__ = version("pagerun")
except Exception:
    __version__ = "0.0.0"

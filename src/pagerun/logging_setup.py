"""Process-wide logging setup shared by the CLI and the API server."""

from __future__ import annotations

import json
import logging
import os
import sys


class _JsonFormatter(logging.Formatter):
    """JSON formatter emitting one structured entry per line with a severity field."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON object with severity."""
        entry = {
            "severity": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str | None = None, *, env: str | None = None) -> None:
    """Set up root logging.

    Outside the ``local`` environment, emits JSON lines suitable for log
    aggregation::

        {"severity": "INFO", "message": "...", "logger": "..."}

    Locally, uses a human-readable plain-text format.

    Args:
        level: Log level name; defaults to ``PAGERUN_LOG_LEVEL`` or ``INFO``.
        env: Environment name; defaults to ``PAGERUN_ENV`` or ``local``.
    """
    log_level = (level or os.environ.get("PAGERUN_LOG_LEVEL", "INFO")).upper()
    env = (env or os.environ.get("PAGERUN_ENV", "local")).strip()

    if env != "local":
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_JsonFormatter())
        logging.root.handlers.clear()
        logging.root.addHandler(handler)
        logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    else:
        logging.basicConfig(
            level=getattr(logging, log_level, logging.INFO),
            format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
            stream=sys.stderr,
        )

    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

"""Workflow loader — load workflow documents from JSON files on disk.

Workflow JSON files live in a configurable directory (default:
``config/workflows/``). Each ``.json`` file contains a single workflow
definition conforming to the ``Workflow`` schema.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pagerun.workflow.models import Workflow

logger = logging.getLogger(__name__)


def load_workflow_from_file(path: Path) -> Workflow:
    """Load a single workflow from a JSON file.

    Args:
        path: Path to the JSON file.

    Returns:
        A validated ``Workflow`` instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        pydantic.ValidationError: If the data does not conform to the schema.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    return Workflow.model_validate(data)


def load_workflows_from_dir(directory: Path | str) -> list[Workflow]:
    """Load all workflow JSON files from a directory.

    Files that fail validation are logged and skipped rather than
    aborting the entire load.

    Args:
        directory: Path to the workflows directory.

    Returns:
        List of successfully loaded ``Workflow`` instances.
    """
    dir_path = Path(directory)
    if not dir_path.is_dir():
        logger.warning("Workflow directory does not exist: %s", dir_path)
        return []

    workflows: list[Workflow] = []
    for json_file in sorted(dir_path.glob("*.json")):
        try:
            wf = load_workflow_from_file(json_file)
            workflows.append(wf)
            logger.info("Loaded workflow %s from %s", wf.workflow_id, json_file.name)
        except Exception:
            logger.exception("Failed to load workflow from %s", json_file)
    return workflows

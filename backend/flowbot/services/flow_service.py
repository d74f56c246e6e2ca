# /flowbot/services/flow_service.py

import json
import logging
from pathlib import Path
from typing import List

from pydantic import ValidationError

from flowbot.models.flow import FlowDefinition

logger = logging.getLogger(__name__)


def load_flows_from_dir(directory: str) -> List[FlowDefinition]:
    """
    Reads every *.json flow export in a directory.

    Files that are not valid JSON or not valid flow definitions are skipped
    with an error log, so one bad export does not keep the service down.
    """
    path = Path(directory)
    if not path.is_dir():
        logger.warning(f"Flows directory not found: {directory}")
        return []

    flows = []
    for file in sorted(path.glob("*.json")):
        try:
            flows.append(FlowDefinition.model_validate(json.loads(file.read_text(encoding="utf-8"))))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Skipping flow file {file.name}: {e}")
    logger.info(f"Loaded {len(flows)} flow definitions from {directory}")
    return flows

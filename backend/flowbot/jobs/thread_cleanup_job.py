# /flowbot/jobs/thread_cleanup_job.py

"""
Inactive thread sweep.

Scheduled by the application lifespan every `cleanup_interval_minutes`.
Removes completed, paused and errored threads whose last activity is older
than `thread_inactivity_hours`. Active threads are never swept, however old.
"""

import logging
from typing import List

from flowbot.config.settings import settings
from flowbot.workflows.engine import FlowEngine

logger = logging.getLogger(__name__)


async def sweep_inactive_threads(engine: FlowEngine) -> List[str]:
    try:
        removed = await engine.cleanup_inactive_threads(settings.thread_inactivity_hours)
    except Exception as e:
        logger.error(f"Inactive thread sweep failed: {e}", exc_info=True)
        return []
    logger.info(f"Inactive thread sweep complete: {len(removed)} removed")
    return removed

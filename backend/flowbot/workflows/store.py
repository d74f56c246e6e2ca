# /flowbot/workflows/store.py

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from flowbot.models.conversation import ConversationThread, ThreadStatus
from flowbot.services.ports import ThreadRepository

logger = logging.getLogger(__name__)


class ThreadStore:
    """
    Live conversation threads keyed by thread id.

    Threads are kept in memory and written through to an optional durable
    repository. Each thread id gets one asyncio.Lock; the engine holds it for
    the whole of an external call so two messages for the same thread run one
    after the other.
    """

    def __init__(self, repository: Optional[ThreadRepository] = None):
        self.repository = repository
        self._threads: Dict[str, ConversationThread] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        return lock

    def get(self, thread_id: str) -> Optional[ConversationThread]:
        return self._threads.get(thread_id)

    async def load(self, thread_id: str) -> Optional[ConversationThread]:
        thread = self._threads.get(thread_id)
        if thread is not None or self.repository is None:
            return thread
        try:
            thread = await self.repository.load_thread(thread_id)
        except Exception as e:
            logger.error(f"Failed to load thread {thread_id} from repository: {e}", exc_info=True)
            return None
        if thread is None:
            return None
        # Another caller may have cached the thread while this read was in flight.
        return self._threads.setdefault(thread_id, thread)

    async def save(self, thread: ConversationThread):
        self._threads[thread.id] = thread
        if self.repository is None:
            return
        try:
            await self.repository.save_thread(thread)
        except Exception as e:
            logger.error(f"Failed to persist thread {thread.id}: {e}", exc_info=True)

    def for_user(self, user_id: str) -> List[ConversationThread]:
        return [thread for thread in self._threads.values() if thread.user_id == user_id]

    async def find_active_by_address(self, address: str) -> Optional[ConversationThread]:
        candidates = [
            thread for thread in self._threads.values()
            if thread.address == address and thread.status == ThreadStatus.ACTIVE
        ]
        if candidates:
            return max(candidates, key=lambda thread: thread.last_activity)
        if self.repository is None:
            return None

        try:
            thread_id = await self.repository.find_active_thread_id(address)
        except Exception as e:
            logger.error(f"Failed to look up active thread for {address}: {e}", exc_info=True)
            return None
        if not thread_id:
            return None
        thread = await self.load(thread_id)
        if thread is None or thread.address != address or thread.status != ThreadStatus.ACTIVE:
            return None
        return thread

    async def sweep_inactive(self, max_age_hours: float = 24) -> List[str]:
        """Drops non-active threads whose last activity is older than the cutoff."""
        cutoff = datetime.utcnow() - timedelta(hours=max_age_hours)
        removed = [
            thread_id for thread_id, thread in self._threads.items()
            if thread.last_activity < cutoff and thread.status != ThreadStatus.ACTIVE
        ]
        for thread_id in removed:
            self._threads.pop(thread_id, None)
            lock = self._locks.get(thread_id)
            if lock is not None and not lock.locked():
                self._locks.pop(thread_id, None)
            if self.repository is not None:
                try:
                    await self.repository.delete_thread(thread_id)
                except Exception as e:
                    logger.error(f"Failed to delete thread {thread_id} from repository: {e}", exc_info=True)
            logger.info(f"Thread cleaned up: {thread_id}")
        return removed

    def __len__(self) -> int:
        return len(self._threads)

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._threads

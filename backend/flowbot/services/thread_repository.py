# /flowbot/services/thread_repository.py

import logging
from typing import Optional
import redis.asyncio as redis

from flowbot.models.conversation import ConversationThread, ThreadStatus
from flowbot.utils.circuit_breaker import CircuitBreaker

# Durable thread snapshots in Redis. Each thread is one JSON document under
# flow_thread:{id}, refreshed with a TTL on every save. An active thread is also
# indexed by channel address under flow_thread_addr:{address}.

logger = logging.getLogger(__name__)

KEY_PREFIX = "flow_thread:"
ADDRESS_KEY_PREFIX = "flow_thread_addr:"


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisThreadRepository:
    def __init__(self, redis_url: Optional[str] = None, ttl: int = 7 * 24 * 3600, client: Optional[redis.Redis] = None):
        self.ttl = ttl
        self.circuit_breaker = CircuitBreaker("redis")
        if client is not None:
            self.redis = client
            return
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
        except Exception as e:
            logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
            self.redis = None

    @staticmethod
    def _key(thread_id: str) -> str:
        return f"{KEY_PREFIX}{thread_id}"

    @staticmethod
    def _address_key(address: str) -> str:
        return f"{ADDRESS_KEY_PREFIX}{address}"

    async def save_thread(self, thread: ConversationThread) -> bool:
        if not self.redis:
            return False
        try:
            payload = thread.model_dump_json(by_alias=True)
            await self.circuit_breaker.call(self.redis.setex, self._key(thread.id), self.ttl, payload)
            await self._index_address(thread)
            return True
        except Exception as e:
            logger.warning(f"Thread save failed for {thread.id}: {e}")
            return False

    async def _index_address(self, thread: ConversationThread):
        key = self._address_key(thread.address)
        if thread.status == ThreadStatus.ACTIVE:
            await self.circuit_breaker.call(self.redis.setex, key, self.ttl, thread.id)
            return
        # Only clear the entry if it still points at this thread.
        current = _decode(await self.circuit_breaker.call(self.redis.get, key))
        if current == thread.id:
            await self.circuit_breaker.call(self.redis.delete, key)

    async def load_thread(self, thread_id: str) -> Optional[ConversationThread]:
        if not self.redis:
            return None
        try:
            raw = await self.circuit_breaker.call(self.redis.get, self._key(thread_id))
        except Exception as e:
            logger.warning(f"Thread load failed for {thread_id}: {e}")
            return None
        if not raw:
            return None
        try:
            return ConversationThread.model_validate_json(raw)
        except ValueError as e:
            logger.error(f"Corrupt thread snapshot for {thread_id}: {e}")
            return None

    async def find_active_thread_id(self, address: str) -> Optional[str]:
        if not self.redis:
            return None
        try:
            return _decode(await self.circuit_breaker.call(self.redis.get, self._address_key(address)))
        except Exception as e:
            logger.warning(f"Address lookup failed for {address}: {e}")
            return None

    async def delete_thread(self, thread_id: str) -> bool:
        if not self.redis:
            return False
        try:
            await self.circuit_breaker.call(self.redis.delete, self._key(thread_id))
            return True
        except Exception as e:
            logger.warning(f"Thread delete failed for {thread_id}: {e}")
            return False

    async def close(self):
        if self.redis:
            await self.redis.aclose()

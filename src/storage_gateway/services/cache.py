import asyncio
import fnmatch
import logging
import time
from collections import OrderedDict
from typing import Any

from storage_gateway.ports import CachePort

logger = logging.getLogger(__name__)


def owner_files_key(owner_id) -> str:
    return f"files:user:{owner_id}"


def owner_files_pattern(owner_id) -> str:
    return f"files:user:{owner_id}:*"


class InMemoryTTLCache:
    """LRU-кэш с TTL. Не больше max_entries записей, просроченные выбрасываются при чтении."""

    def __init__(self, max_entries: int = 1024, clock=time.monotonic):
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        async with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def delete_by_pattern(self, pattern: str) -> int:
        async with self._lock:
            keys = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for k in keys:
                del self._entries[k]
            return len(keys)


class SafeCache:
    """Кэш никогда не источник истины: любая ошибка - промах."""

    def __init__(self, inner: CachePort):
        self._inner = inner

    async def get(self, key: str) -> Any:
        try:
            return await self._inner.get(key)
        except Exception:
            logger.warning("Cache get failed for %s", key, exc_info=True)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        try:
            await self._inner.set(key, value, ttl_seconds)
        except Exception:
            logger.warning("Cache set failed for %s", key, exc_info=True)

    async def delete(self, key: str) -> None:
        try:
            await self._inner.delete(key)
        except Exception:
            logger.warning("Cache delete failed for %s", key, exc_info=True)

    async def delete_by_pattern(self, pattern: str) -> int:
        try:
            return await self._inner.delete_by_pattern(pattern)
        except Exception:
            logger.warning("Cache invalidation failed for %s", pattern, exc_info=True)
            return 0

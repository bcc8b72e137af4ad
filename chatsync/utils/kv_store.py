import logging
from typing import Dict, Optional, Protocol

from chatsync.config import Settings


logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryKeyValueStore:

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        return


class RedisKeyValueStore:

    def __init__(self, url: str) -> None:
        import redis.asyncio as redis

        self._redis = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key: str, value: str) -> None:
        await self._redis.set(key, value)

    async def remove(self, key: str) -> None:
        await self._redis.delete(key)

    async def close(self) -> None:
        await self._redis.aclose()


def build_kv_store(settings: Settings):
    if not settings.redis_url:
        logger.info("REDIS_URL not set, chat cache is kept in memory only")
        return MemoryKeyValueStore()
    return RedisKeyValueStore(settings.redis_url)

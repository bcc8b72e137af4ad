import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Set

from chatsync.config import Settings


logger = logging.getLogger(__name__)

Handler = Callable[[str], Awaitable[None]]


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_channel(sanitized_identity: str) -> str:
    return f"user:{sanitized_identity}"


def encode_event(event_type: str, **payload: Any) -> str:
    return json.dumps({"type": event_type, **payload})


class LocalBus:
    """In-process pub/sub; each subscriber drains its own queue in order."""

    enabled = True

    def __init__(self) -> None:
        self._channels: Dict[str, Set[asyncio.Queue]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._channels.get(channel, ())):
            queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: Handler):
        queue: asyncio.Queue = asyncio.Queue()
        self._channels.setdefault(channel, set()).add(queue)
        channels = self._channels

        class _Sub:
            async def run(self):
                while True:
                    data = await queue.get()
                    try:
                        await on_message(data)
                    except Exception:
                        logger.exception("Handler for %s failed", channel)

            async def cancel(self):
                subscribers = channels.get(channel)
                if subscribers is not None:
                    subscribers.discard(queue)
                    if not subscribers:
                        channels.pop(channel, None)

        return _Sub()

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def close(self) -> None:
        self._channels.clear()


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        import redis.asyncio as redis

        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: Handler):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except Exception as exc:
                        logger.warning("Redis pubsub read on %s failed: %s", channel, exc)
                        await asyncio.sleep(0.5)
                        continue
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        try:
                            await on_message(data)
                        except Exception:
                            logger.exception("Handler for %s failed", channel)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except Exception as exc:
                    logger.debug("Redis pubsub teardown on %s: %s", channel, exc)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


def build_bus(settings: Settings):
    if not settings.redis_url:
        logger.info("REDIS_URL not set, live updates use the in-process bus")
        return LocalBus()
    return RedisBus(settings.redis_url)

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
import structlog

from visaconnect.core.config import get_settings


logger = structlog.get_logger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_conversations_channel(user_id: str) -> str:
    return f"user:{user_id}:conversations"


class NoopSubscription:

    async def run(self) -> None:
        await asyncio.Future()

    async def cancel(self) -> None:
        return


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: OnMessage):
        return NoopSubscription()

    async def close(self) -> None:
        return


class RedisSubscription:

    def __init__(self, pubsub, channel: str, on_message: OnMessage) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except redis.RedisError as exc:
                logger.warning("bus_read_failed", channel=self._channel, error=str(exc))
                await asyncio.sleep(0.5)
                continue
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                await self._on_message(data)

    async def cancel(self) -> None:
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except redis.RedisError as exc:
            logger.warning("bus_unsubscribe_failed", channel=self._channel, error=str(exc))


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel, on_message)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().REDIS_URL
    _bus = RedisBus(url) if url else NoopBus()
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None


async def publish_event(channel: str, event: dict[str, Any], bus: Optional[Any] = None) -> None:
    """Fire-and-forget change notification; delivery is best effort."""
    bus = bus or await get_bus()
    if not getattr(bus, "enabled", False):
        return
    try:
        await bus.publish(channel, json.dumps(event))
    except redis.RedisError as exc:
        logger.warning("bus_publish_failed", channel=channel, error=str(exc))

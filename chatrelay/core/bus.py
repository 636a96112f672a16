"""Event Bus: Redis pub/sub for conversation channels. Publish and subscribe with typed payloads."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from pydantic import BaseModel

from chatrelay.core.events import BusMessage, StreamEvent

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "chatrelay:"


def _serialize(payload: BaseModel) -> str:
    return payload.model_dump_json()


def _deserialize(raw: bytes, model: type[BaseModel]) -> BaseModel:
    return model.model_validate_json(raw.decode("utf-8"))


def redis_channel(channel: str, prefix: str = DEFAULT_KEY_PREFIX) -> str:
    """Redis channel name for a logical channel such as chat.42."""
    return f"{prefix}{channel}"


class EventBus:
    """Redis-backed event bus. Publishes stream events and dispatches them to async handlers."""

    def __init__(self, redis_url: str, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._client: aioredis.Redis | None = None
        self._pubsub: aioredis.client.PubSub | None = None
        self._handlers: dict[str, list[Callable[[BusMessage, str], Awaitable[None]]]] = {}
        self._running = False

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=False,
            )
            await self._client.ping()
        logger.info("EventBus connected to Redis")

    async def disconnect(self) -> None:
        if self._pubsub:
            await self._pubsub.close()
            self._pubsub = None
        if self._client:
            await self._client.close()
            self._client = None
        self._running = False

    async def _ensure_connected(self) -> None:
        if self._client is None:
            await self.connect()

    async def publish(self, channel: str, message: BusMessage) -> int:
        """Publish to a logical channel. Returns the number of subscribers that received it."""
        await self._ensure_connected()
        receivers = await self._client.publish(redis_channel(channel, self._prefix), _serialize(message))
        logger.debug("published %s", message.event, extra={"channel": channel, "receivers": receivers})
        return receivers

    async def publish_stream_event(self, event: StreamEvent, event_name: str) -> int:
        return await self.publish(event.channel, BusMessage(event=event_name, data=event.payload()))

    def subscribe(self, channel: str, handler: Callable[[BusMessage, str], Awaitable[None]]) -> None:
        """Register a handler called with (message, logical channel) for every message on channel."""
        self._handlers.setdefault(redis_channel(channel, self._prefix), []).append(handler)

    async def run_listener(self) -> None:
        """Run the pub/sub listener and dispatch to handlers. Blocks until stop."""
        await self._ensure_connected()
        self._pubsub = self._client.pubsub()
        channels = list(self._handlers.keys())
        if not channels:
            logger.warning("EventBus listener started with no subscriptions")
            return
        await self._pubsub.subscribe(*channels)
        self._running = True
        logger.info("EventBus listener started", extra={"channels": channels})
        try:
            async for message in self._pubsub.listen():
                if not self._running:
                    break
                if message["type"] != "message":
                    continue
                ch = message["channel"]
                if isinstance(ch, bytes):
                    ch = ch.decode("utf-8")
                data = message.get("data")
                if not data:
                    continue
                try:
                    payload = _deserialize(data, BusMessage)
                except Exception as e:
                    logger.warning("failed to deserialize event", extra={"channel": ch, "error": str(e)})
                    continue
                logical = ch[len(self._prefix):] if ch.startswith(self._prefix) else ch
                for handler in self._handlers.get(ch, []):
                    try:
                        await handler(payload, logical)
                    except Exception as e:
                        logger.exception("handler failed for %s: %s", ch, e)
        finally:
            await self._pubsub.unsubscribe()
            self._running = False

    def stop(self) -> None:
        self._running = False

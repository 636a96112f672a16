"""Event sinks: where a relay run delivers its events.

The relay only sees :class:`EventSink`. Two implementations exist:

- :class:`BusEventSink` publishes to the Redis pub/sub channel of the event;
  subscribers connect separately (``GET /conversations/<id>/events``).
- :class:`FramedEventSink` writes Server-Sent Events frames straight into a
  streaming HTTP response.

``heartbeat()`` is a transport concern: SSE comment lines that keep proxies
from closing an idle connection. It never produces a StreamEvent. Sinks with
``holds_connection = False`` get no heartbeats from the keepalive guard.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from chatrelay.core.bus import EventBus
from chatrelay.core.events import DEFAULT_EVENT_NAME, StreamEvent

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


@runtime_checkable
class EventSink(Protocol):
    """Ordered delivery of stream events; each call completes before the relay continues."""

    async def emit(self, event: StreamEvent) -> None:
        ...

    async def heartbeat(self) -> None:
        ...


class BusEventSink:
    """Publish each event on its channel through the Redis event bus. Fire-and-forget per subscriber."""

    holds_connection = False

    def __init__(self, bus: EventBus, event_name: str = DEFAULT_EVENT_NAME) -> None:
        self._bus = bus
        self._event_name = event_name

    async def emit(self, event: StreamEvent) -> None:
        receivers = await self._bus.publish_stream_event(event, self._event_name)
        if receivers == 0:
            logger.debug("no subscribers on %s", event.channel)

    async def heartbeat(self) -> None:
        # pub/sub publishes do not hold a client connection open
        return None


class FramedEventSink:
    """Write SSE frames to a writer coroutine (e.g. a queue feeding a streaming response)."""

    holds_connection = True

    def __init__(
        self,
        write: Callable[[str], Awaitable[None]],
        event_name: str = DEFAULT_EVENT_NAME,
    ) -> None:
        self._write = write
        self._event_name = event_name
        self.frames_written = 0
        self.heartbeats_written = 0

    async def emit(self, event: StreamEvent) -> None:
        await self._write(format_sse(self._event_name, event.payload()))
        self.frames_written += 1

    async def heartbeat(self) -> None:
        await self._write(KEEPALIVE_FRAME)
        self.heartbeats_written += 1

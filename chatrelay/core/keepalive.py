"""KeepaliveGuard: heartbeats for idle connections and early stop on client disconnect."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar, Union

from chatrelay.core.events import StreamEvent
from chatrelay.core.sinks import EventSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LIVENESS_WINDOW = 5.0
DEFAULT_POLL_INTERVAL = 0.5

DisconnectProbe = Callable[[], Union[bool, Awaitable[bool]]]


class _TrackedSink:
    """Forwards to the real sink and records the time of every data event."""

    def __init__(self, sink: EventSink, guard: "KeepaliveGuard") -> None:
        self._sink = sink
        self._guard = guard

    async def emit(self, event: StreamEvent) -> None:
        await self._sink.emit(event)
        self._guard.mark_activity()

    async def heartbeat(self) -> None:
        await self._sink.heartbeat()


class KeepaliveGuard:
    """Runs alongside a relay run.

    Every ``poll_interval`` seconds it asks the disconnect probe whether the
    client went away; if so it sets :attr:`stop`, which the relay watches while
    waiting for the next fragment. Otherwise, once ``liveness_window`` seconds
    pass with neither a data event nor a heartbeat, it sends a heartbeat through
    the sink. Sinks that hold no client connection (``holds_connection = False``)
    get no heartbeats and ``heartbeats`` stays at zero.
    """

    def __init__(
        self,
        sink: EventSink,
        liveness_window: float = DEFAULT_LIVENESS_WINDOW,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        is_disconnected: Optional[DisconnectProbe] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._sends_heartbeats = getattr(sink, "holds_connection", True)
        self._liveness_window = liveness_window
        self._poll_interval = poll_interval
        self._is_disconnected = is_disconnected
        self._clock = clock
        self._last_activity = clock()
        self.stop = asyncio.Event()
        self.disconnected = False
        self.heartbeats = 0

    def track(self, sink: EventSink | None = None) -> EventSink:
        """Sink to hand to the relay so that data events reset the idle timer."""
        return _TrackedSink(sink or self._sink, self)

    def mark_activity(self) -> None:
        self._last_activity = self._clock()

    async def run(self, work: Callable[[asyncio.Event], Awaitable[T]]) -> T:
        """Run ``work(stop)`` under the guard and return its result (or raise its error)."""
        task = asyncio.ensure_future(work(self.stop))
        try:
            while not task.done():
                done, _ = await asyncio.wait({task}, timeout=self._poll_interval)
                if done:
                    break
                await self._check()
            return task.result()
        finally:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _check(self) -> None:
        if self.stop.is_set():
            return
        if await self._probe():
            self._on_disconnect("client disconnected")
            return
        if not self._sends_heartbeats:
            return
        idle = self._clock() - self._last_activity
        if idle < self._liveness_window:
            return
        try:
            await self._sink.heartbeat()
        except Exception as exc:
            logger.warning("heartbeat write failed: %s", exc)
            self._on_disconnect("heartbeat write failed")
            return
        self.heartbeats += 1
        self._last_activity = self._clock()
        logger.debug("heartbeat sent", extra={"idle_seconds": round(idle, 2)})

    async def _probe(self) -> bool:
        if self._is_disconnected is None:
            return False
        result = self._is_disconnected()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    def _on_disconnect(self, reason: str) -> None:
        self.disconnected = True
        self.stop.set()
        logger.info("stopping relay: %s", reason)

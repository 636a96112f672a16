"""ThrottledRelay: drain a token source into coalesced, rate-limited stream events.

Each run owns its buffer and assembled text. Progress events carry the delta
since the previous flush and are spaced at least ``flush_interval`` apart
(the final pre-terminal flush excepted). Exactly one terminal event goes out
per run unless the run is stopped by a client disconnect, in which case the
run ends quietly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, NoReturn, Optional

from chatrelay.core.errors import SourceError, format_source_error
from chatrelay.core.events import EventKind, StreamEvent
from chatrelay.core.sinks import EventSink
from chatrelay.models.streaming import TokenSource

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 0.1
DEFAULT_FRAGMENT_DELAY = 0.1


@dataclass
class AssembledText:
    """Full text of one run. ``aborted`` is set when a disconnect stopped the run early."""

    text: str = ""
    aborted: bool = False
    fragments: int = 0


@dataclass
class RelayBuffer:
    """Fragments not yet flushed to an event."""

    parts: list[str] = field(default_factory=list)

    def add(self, fragment: str) -> None:
        self.parts.append(fragment)

    def drain(self) -> str:
        text = "".join(self.parts)
        self.parts.clear()
        return text

    def __bool__(self) -> bool:
        return bool(self.parts)


class _Stopped(Exception):
    pass


class ThrottledRelay:
    """Trailing coalescing throttle between a token source and an event sink."""

    def __init__(
        self,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        fragment_delay: float = DEFAULT_FRAGMENT_DELAY,
        kind: EventKind = EventKind.PROGRESS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.flush_interval = flush_interval
        self.fragment_delay = fragment_delay
        self.kind = kind
        self._clock = clock
        self._sleep = sleep

    async def run(
        self,
        source: TokenSource,
        channel: str,
        sink: EventSink,
        *,
        stop: Optional[asyncio.Event] = None,
    ) -> AssembledText:
        """Drain ``source`` into ``sink``. Raises SourceError after emitting the terminal error event."""
        assembled: list[str] = []
        flushed: list[str] = []
        buffer = RelayBuffer()
        result = AssembledText()
        last_flush = self._clock()
        logger.info("relay started", extra={"channel": channel, "kind": self.kind.value})
        while True:
            try:
                fragment = await self._next(source, stop)
            except StopAsyncIteration:
                break
            except _Stopped:
                result.text = "".join(assembled)
                result.aborted = True
                logger.info(
                    "relay stopped by disconnect",
                    extra={"channel": channel, "fragments": result.fragments},
                )
                return result
            except Exception as exc:
                await self._fail(exc, channel, sink, "".join(flushed), result.fragments)
            if not fragment:
                continue
            assembled.append(fragment)
            buffer.add(fragment)
            result.fragments += 1
            logger.debug("fragment received", extra={"channel": channel, "size": len(fragment)})
            now = self._clock()
            if now - last_flush >= self.flush_interval and buffer:
                delta = buffer.drain()
                await sink.emit(StreamEvent.progress(channel, delta, self.kind))
                flushed.append(delta)
                last_flush = now
            if self.fragment_delay > 0:
                await self._sleep(self.fragment_delay)

        if buffer:
            await sink.emit(StreamEvent.progress(channel, buffer.drain(), self.kind))
        result.text = "".join(assembled)
        await sink.emit(StreamEvent.complete(channel, result.text, self.kind))
        logger.info(
            "relay completed",
            extra={"channel": channel, "fragments": result.fragments, "length": len(result.text)},
        )
        return result

    async def _fail(
        self, exc: Exception, channel: str, sink: EventSink, partial: str, fragments: int
    ) -> NoReturn:
        description = format_source_error(exc)
        logger.warning(
            "token source failed: %s", exc, extra={"channel": channel, "fragments": fragments}
        )
        await sink.emit(StreamEvent.failure(channel, description, self.kind))
        raise SourceError(description, partial_text=partial, terminal_sent=True) from exc

    async def _next(self, source: TokenSource, stop: Optional[asyncio.Event]) -> str:
        """Pull one fragment; a set ``stop`` event wins over a pending pull."""
        if stop is None:
            return await source.__anext__()
        if stop.is_set():
            raise _Stopped()
        pull = asyncio.ensure_future(source.__anext__())
        waiter = asyncio.ensure_future(stop.wait())
        try:
            done, _ = await asyncio.wait({pull, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            pull.cancel()
            raise
        finally:
            waiter.cancel()
        if pull in done:
            return pull.result()
        pull.cancel()
        try:
            await pull
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        except Exception as exc:
            logger.debug("pending pull failed after stop: %s", exc)
        raise _Stopped()

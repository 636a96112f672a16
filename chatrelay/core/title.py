"""TitleRelay: regenerate the conversation title after an assistant turn, streamed like the message.

The decision is a heuristic: regenerate while the title is still the placeholder,
and then every ``period`` messages. The title text goes through its own
ThrottledRelay whose events are tagged as title updates. A failure here is
logged and swallowed; it never fails the message that triggered it.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Optional, Protocol

from chatrelay.config.loader import PLACEHOLDER_TITLE
from chatrelay.core.errors import TitleGenerationError
from chatrelay.core.events import EventKind, StreamEvent
from chatrelay.core.recorder import CompletionRecorder
from chatrelay.core.relay import ThrottledRelay
from chatrelay.core.sinks import EventSink
from chatrelay.memory.conversations import Conversation, MessageRecord

logger = logging.getLogger(__name__)

TITLE_STRIP_CHARS = "\"'.!?"
DEFAULT_PERIOD = 7
DEFAULT_CONTEXT_MESSAGES = 7

_STRIP_TABLE = str.maketrans("", "", TITLE_STRIP_CHARS)


class TitleState(str, Enum):
    IDLE = "idle"
    DECIDING = "deciding"
    RUNNING = "running"
    DONE = "done"


class TitleSource(Protocol):
    def stream_title(self, context: str) -> AsyncIterator[str]:
        ...


class ConversationReader(Protocol):
    async def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    async def count_messages(self, conversation_id: str) -> int:
        ...

    async def recent_messages(self, conversation_id: str, limit: int) -> list[MessageRecord]:
        ...


def should_generate_title(
    title: str,
    message_count: int,
    placeholder: str = PLACEHOLDER_TITLE,
    period: int = DEFAULT_PERIOD,
) -> bool:
    if title == placeholder:
        return True
    return period > 0 and message_count % period == 0


def sanitize_title(raw: str) -> str:
    """Remove every ``" ' . ! ?`` and trim surrounding whitespace."""
    return raw.translate(_STRIP_TABLE).strip()


class _HoldTerminalSink:
    """Forwards title progress and errors; keeps back the raw success terminal."""

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self.held: Optional[StreamEvent] = None

    async def emit(self, event: StreamEvent) -> None:
        if event.is_complete and not event.is_error:
            self.held = event
            return
        await self._sink.emit(event)

    async def heartbeat(self) -> None:
        await self._sink.heartbeat()


class TitleRelay:
    """Idle -> Deciding -> (Done | Running -> Done)."""

    def __init__(
        self,
        relay: ThrottledRelay,
        source: TitleSource,
        conversations: ConversationReader,
        recorder: CompletionRecorder,
        placeholder: str = PLACEHOLDER_TITLE,
        period: int = DEFAULT_PERIOD,
        context_messages: int = DEFAULT_CONTEXT_MESSAGES,
    ) -> None:
        if relay.kind is not EventKind.TITLE_PROGRESS:
            raise ValueError("title relay needs a relay emitting title-progress events")
        self._relay = relay
        self._source = source
        self._conversations = conversations
        self._recorder = recorder
        self._placeholder = placeholder
        self._period = period
        self._context_messages = context_messages
        self.state = TitleState.IDLE

    async def run(
        self,
        conversation_id: str,
        channel: str,
        sink: EventSink,
        *,
        stop: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        """Returns the new title, or None when skipped, empty, aborted or failed."""
        self.state = TitleState.DECIDING
        try:
            return await self._generate(conversation_id, channel, sink, stop)
        except TitleGenerationError as exc:
            logger.warning(
                "title generation failed: %s",
                exc,
                exc_info=exc.__cause__ or exc,
                extra={"conversation_id": conversation_id},
            )
            await self._touch(conversation_id)
            return None
        finally:
            self.state = TitleState.DONE

    async def _generate(
        self,
        conversation_id: str,
        channel: str,
        sink: EventSink,
        stop: Optional[asyncio.Event],
    ) -> Optional[str]:
        try:
            conversation = await self._conversations.get_conversation(conversation_id)
            count = await self._conversations.count_messages(conversation_id)
            if not should_generate_title(conversation.title, count, self._placeholder, self._period):
                logger.debug("title kept", extra={"conversation_id": conversation_id, "messages": count})
                return None

            self.state = TitleState.RUNNING
            recent = await self._conversations.recent_messages(conversation_id, self._context_messages)
            context = "\n\n".join(m.content for m in recent if m.content)
            held = _HoldTerminalSink(sink)
            result = await self._relay.run(self._source.stream_title(context), channel, held, stop=stop)
            if result.aborted:
                return None

            title = sanitize_title(result.text)
            if not title:
                logger.info("empty title discarded", extra={"conversation_id": conversation_id})
                await self._recorder.touch_activity(conversation_id)
                return None
            await self._recorder.update_title(conversation_id, title)
            await sink.emit(StreamEvent.complete(channel, title, EventKind.TITLE_PROGRESS))
            logger.info("title updated", extra={"conversation_id": conversation_id, "title": title})
            return title
        except Exception as exc:
            raise TitleGenerationError(str(exc)) from exc

    async def _touch(self, conversation_id: str) -> None:
        try:
            await self._recorder.touch_activity(conversation_id)
        except Exception as exc:
            logger.warning("could not refresh last activity: %s", exc, extra={"conversation_id": conversation_id})

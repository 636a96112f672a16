"""Orchestrator: one user message in, one relayed assistant turn out, then the optional title.

Order of effects for a turn:
  1. record the user message;
  2. read the history and build the model turns (system preamble first);
  3. create the empty assistant placeholder;
  4. relay the completion under a KeepaliveGuard;
  5. finalize the placeholder with the assembled text and refresh last activity;
  6. run the TitleRelay in the same task.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from chatrelay.core.channels import channel_for
from chatrelay.core.errors import RelayTimeoutError, SourceError, format_source_error
from chatrelay.core.events import EventKind, StreamEvent
from chatrelay.core.keepalive import DisconnectProbe, KeepaliveGuard
from chatrelay.core.preamble import build_system_preamble
from chatrelay.core.recorder import CompletionRecorder
from chatrelay.core.relay import ThrottledRelay
from chatrelay.core.sinks import EventSink
from chatrelay.core.title import TitleRelay
from chatrelay.memory.conversations import ConversationNotFoundError, ConversationStore, MessageRecord
from chatrelay.memory.instructions import InstructionStore
from chatrelay.memory.users import UserProfile
from chatrelay.models.gateway import ModelGateway, resolve_model
from chatrelay.models.streaming import ChatTurn

if TYPE_CHECKING:
    from chatrelay.config.loader import Config

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    conversation_id: str
    message: MessageRecord
    text: str
    aborted: bool = False
    title: Optional[str] = None


class _FlushedText:
    """Sink wrapper remembering what subscribers have already been sent for the message body."""

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self.parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self.parts)

    async def emit(self, event: StreamEvent) -> None:
        await self._sink.emit(event)
        if event.kind is EventKind.PROGRESS and not event.is_complete:
            self.parts.append(event.content)

    async def heartbeat(self) -> None:
        await self._sink.heartbeat()


@dataclass
class _TurnState:
    placeholder: Optional[MessageRecord] = None
    flushed: Optional[_FlushedText] = None
    finalized: bool = field(default=False)


class ChatOrchestrator:
    """Runs relay turns. Holds no per-conversation state between turns."""

    def __init__(
        self,
        config: "Config",
        conversations: ConversationStore,
        instructions: InstructionStore,
        gateway: ModelGateway,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._conversations = conversations
        self._instructions = instructions
        self._gateway = gateway
        self._clock = clock
        self._recorder = CompletionRecorder(conversations)

    async def close(self) -> None:
        await self._conversations.close()
        await self._instructions.close()
        await self._gateway.close()

    def _relay(self, kind: EventKind) -> ThrottledRelay:
        streaming = self._config.streaming
        return ThrottledRelay(
            flush_interval=streaming.flush_interval_ms / 1000,
            fragment_delay=streaming.fragment_delay_ms / 1000,
            kind=kind,
        )

    def _title_relay(self) -> TitleRelay:
        title = self._config.title
        return TitleRelay(
            relay=self._relay(EventKind.TITLE_PROGRESS),
            source=self._gateway,
            conversations=self._conversations,
            recorder=self._recorder,
            placeholder=title.placeholder,
            period=title.period,
            context_messages=title.context_messages,
        )

    async def send_message(
        self,
        conversation_id: str,
        user: UserProfile,
        text: str,
        sink: EventSink,
        *,
        model: Optional[str] = None,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> TurnResult:
        """Request entry point. Enforces the request ceiling and reports failures to subscribers."""
        channel = channel_for(conversation_id)
        state = _TurnState()
        timeout = self._config.streaming.request_timeout_seconds
        try:
            return await asyncio.wait_for(
                self._turn(state, conversation_id, user, text, sink, model, is_disconnected),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            error = RelayTimeoutError(
                format_source_error(exc),
                partial_text=state.flushed.text if state.flushed else "",
            )
            logger.error(
                "request exceeded %.0fs", timeout, extra={"conversation_id": conversation_id}
            )
            await self._keep_partial(state, error.partial_text)
            await self._broadcast_error(sink, channel, error.description)
            raise error from exc
        except SourceError as exc:
            logger.error(
                "relay failed: %s", exc.description, extra={"conversation_id": conversation_id}
            )
            if not exc.terminal_sent:
                await self._broadcast_error(sink, channel, exc.description)
            raise
        except ConversationNotFoundError:
            raise
        except Exception as exc:
            logger.exception("turn failed", extra={"conversation_id": conversation_id})
            await self._broadcast_error(sink, channel, format_source_error(exc))
            raise

    async def _turn(
        self,
        state: _TurnState,
        conversation_id: str,
        user: UserProfile,
        text: str,
        sink: EventSink,
        model: Optional[str],
        is_disconnected: Optional[DisconnectProbe],
    ) -> TurnResult:
        channel = channel_for(conversation_id)
        conversation = await self._conversations.get_conversation(conversation_id)
        await self._recorder.append(conversation_id, "user", text)

        turns = await self._build_turns(conversation_id, user)
        model_name = resolve_model(
            model, conversation.model, user.last_used_model, default=self._gateway.default_model
        )
        placeholder = await self._recorder.create_placeholder(conversation_id)
        state.placeholder = placeholder
        state.flushed = _FlushedText(sink)

        streaming = self._config.streaming
        guard = KeepaliveGuard(
            sink,
            liveness_window=streaming.liveness_window_seconds,
            poll_interval=streaming.poll_interval_seconds,
            is_disconnected=is_disconnected,
        )
        tracked = guard.track(state.flushed)

        async def work(stop: asyncio.Event) -> TurnResult:
            source = self._gateway.stream_chat(turns, model=model_name)
            result = await self._relay(EventKind.PROGRESS).run(source, channel, tracked, stop=stop)
            await self._recorder.finalize(placeholder, result.text)
            state.finalized = True
            await self._recorder.touch_activity(conversation_id)
            if result.aborted:
                return TurnResult(conversation_id, placeholder, result.text, aborted=True)
            title = await self._title_relay().run(conversation_id, channel, tracked, stop=stop)
            return TurnResult(conversation_id, placeholder, result.text, title=title)

        try:
            return await guard.run(work)
        except SourceError:
            await self._keep_partial(state, state.flushed.text)
            raise

    async def _build_turns(self, conversation_id: str, user: UserProfile) -> list[ChatTurn]:
        history = await self._conversations.get_messages(conversation_id)
        instruction = await self._instructions.get_active(user.id)
        turns: list[ChatTurn] = [
            {"role": "system", "content": build_system_preamble(user, instruction, self._clock())}
        ]
        turns.extend({"role": m.role, "content": m.content} for m in history)
        return turns

    async def _keep_partial(self, state: _TurnState, partial: str) -> None:
        """Leave partial content in the placeholder; nothing already sent is rolled back."""
        if state.placeholder is None or state.finalized:
            return
        try:
            await self._recorder.finalize(state.placeholder, partial)
            state.finalized = True
        except Exception as exc:
            logger.warning("could not keep partial content: %s", exc)

    async def _broadcast_error(self, sink: EventSink, channel: str, description: str) -> None:
        try:
            await sink.emit(StreamEvent.failure(channel, description))
        except Exception as exc:
            logger.warning("could not broadcast error event: %s", exc, extra={"channel": channel})


def build_orchestrator(config: "Config") -> ChatOrchestrator:
    """Wire stores and the model gateway from config. Create one per event loop."""
    from chatrelay.models.local import OpenAICompatibleClient

    prefix = config.redis.key_prefix
    client = OpenAICompatibleClient(
        base_url=config.model.base_url,
        api_key=config.model.api_key,
        timeout_seconds=config.model.timeout_seconds,
    )
    gateway = ModelGateway(
        client,
        default_model=config.model.default_model,
        title_model=config.model.title_model,
        temperature=config.model.temperature,
    )
    return ChatOrchestrator(
        config,
        ConversationStore(config.redis.url, key_prefix=prefix),
        InstructionStore(config.redis.url, key_prefix=prefix),
        gateway,
    )

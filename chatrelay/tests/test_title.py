"""Tests for the title relay: decision heuristic, sanitization, streamed title, failure containment."""

from __future__ import annotations

import pytest

from chatrelay.core.events import EventKind
from chatrelay.core.recorder import CompletionRecorder
from chatrelay.core.relay import ThrottledRelay
from chatrelay.core.title import TitleRelay, TitleState, sanitize_title, should_generate_title
from chatrelay.tests.fakes import FakeClock, FakeGateway, InMemoryConversations, RecordingSink


def test_should_generate_title_placeholder():
    assert should_generate_title("Nouvelle conversation", 3)


def test_should_generate_title_every_period():
    assert should_generate_title("Voyage à Rome", 7)
    assert should_generate_title("Voyage à Rome", 14)
    assert not should_generate_title("Voyage à Rome", 8)
    assert should_generate_title("Voyage à Rome", 4, period=2)


def test_should_generate_title_period_zero_only_placeholder():
    assert not should_generate_title("Voyage", 0, period=0)
    assert should_generate_title("Nouvelle conversation", 5, period=0)


def test_sanitize_title():
    assert sanitize_title('"Voyage à Rome!"') == "Voyage à Rome"
    assert sanitize_title("  L'été.  ") == "Lété"
    assert sanitize_title("Pourquoi ? Parce que.") == "Pourquoi  Parce que"
    assert sanitize_title(" ... ") == ""


def _title_relay(conversations, gateway, period=7):
    relay = ThrottledRelay(flush_interval=0, fragment_delay=0, kind=EventKind.TITLE_PROGRESS, clock=FakeClock())
    return TitleRelay(relay, gateway, conversations, CompletionRecorder(conversations), period=period)


async def _conversation_with_messages(store, title="Nouvelle conversation", count=2):
    conversation = store.add_conversation(title=title)
    for i in range(count):
        await store.append_message(conversation.id, "user" if i % 2 == 0 else "assistant", f"m{i}")
    return conversation


def test_title_relay_requires_title_kind():
    store = InMemoryConversations()
    with pytest.raises(ValueError):
        TitleRelay(ThrottledRelay(), FakeGateway(), store, CompletionRecorder(store))


@pytest.mark.asyncio
async def test_title_streamed_then_sanitized_terminal():
    store = InMemoryConversations()
    conversation = await _conversation_with_messages(store)
    gateway = FakeGateway(title=['"Recette', ' de crêpes".'])
    sink = RecordingSink()
    title_relay = _title_relay(store, gateway)

    title = await title_relay.run(conversation.id, "chat.1", sink)

    assert title == "Recette de crêpes"
    assert store.conversations[conversation.id].title == "Recette de crêpes"
    assert all(e.is_title for e in sink.events)
    assert [e.content for e in sink.events if not e.is_complete] == ['"Recette', ' de crêpes".']
    assert len(sink.terminals) == 1
    assert sink.terminals[0].content == "Recette de crêpes"
    assert not sink.terminals[0].is_error
    assert title_relay.state is TitleState.DONE


@pytest.mark.asyncio
async def test_title_context_uses_recent_messages():
    store = InMemoryConversations()
    conversation = await _conversation_with_messages(store, count=9)
    gateway = FakeGateway(title=["Titre"])
    relay = ThrottledRelay(flush_interval=0, fragment_delay=0, kind=EventKind.TITLE_PROGRESS, clock=FakeClock())
    title_relay = TitleRelay(relay, gateway, store, CompletionRecorder(store), context_messages=3)

    await title_relay.run(conversation.id, "chat.1", RecordingSink())

    assert gateway.title_calls == ["m6\n\nm7\n\nm8"]


@pytest.mark.asyncio
async def test_title_skipped_when_custom_and_off_period():
    store = InMemoryConversations()
    conversation = await _conversation_with_messages(store, title="Voyage", count=3)
    gateway = FakeGateway(title=["Autre"])
    sink = RecordingSink()

    assert await _title_relay(store, gateway).run(conversation.id, "chat.1", sink) is None
    assert gateway.title_calls == []
    assert sink.events == []
    assert store.conversations[conversation.id].title == "Voyage"


@pytest.mark.asyncio
async def test_title_regenerated_on_period():
    store = InMemoryConversations()
    conversation = await _conversation_with_messages(store, title="Voyage", count=7)
    gateway = FakeGateway(title=["Voyage en Italie"])

    assert await _title_relay(store, gateway).run(conversation.id, "chat.1", RecordingSink()) == "Voyage en Italie"


@pytest.mark.asyncio
async def test_title_failure_is_contained():
    store = InMemoryConversations()
    conversation = await _conversation_with_messages(store)
    gateway = FakeGateway(title=["Rec", RuntimeError("model down")])
    sink = RecordingSink()

    assert await _title_relay(store, gateway).run(conversation.id, "chat.1", sink) is None
    assert store.conversations[conversation.id].title == "Nouvelle conversation"
    assert conversation.id in store.touched
    assert all(e.is_title for e in sink.events)
    assert [e.is_error for e in sink.terminals] == [True]


@pytest.mark.asyncio
async def test_empty_title_discarded():
    store = InMemoryConversations()
    conversation = await _conversation_with_messages(store)
    gateway = FakeGateway(title=["..."])
    sink = RecordingSink()

    assert await _title_relay(store, gateway).run(conversation.id, "chat.1", sink) is None
    assert store.conversations[conversation.id].title == "Nouvelle conversation"
    assert conversation.id in store.touched
    assert sink.terminals == []


@pytest.mark.asyncio
async def test_missing_conversation_is_contained():
    store = InMemoryConversations()
    gateway = FakeGateway(title=["x"])

    assert await _title_relay(store, gateway).run("404", "chat.404", RecordingSink()) is None
    assert gateway.title_calls == []


def test_title_decision_examples():
    assert should_generate_title("Nouvelle conversation", 3) is True
    assert should_generate_title("Weekend Plans", 14) is True
    assert should_generate_title("Weekend Plans", 15) is False


def test_sanitize_title_example():
    assert sanitize_title('  "Plan de voyage!"  ') == "Plan de voyage"

"""Tests for conversation, instruction and user stores (Redis, or mocked Redis)."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatrelay.memory.conversations import ConversationNotFoundError, ConversationStore
from chatrelay.memory.instructions import CustomInstruction, InstructionStore
from chatrelay.memory.users import (
    _hash_password,
    create_session,
    create_user,
    get_session,
    user_for_session,
    verify_password,
    verify_user,
)

REDIS_TEST_URL = "redis://localhost:6379/14"


@pytest.fixture
def redis_url():
    try:
        import redis

        r = redis.from_url(REDIS_TEST_URL, decode_responses=True)
        r.ping()
        r.close()
        return REDIS_TEST_URL
    except Exception:
        pytest.skip("Redis not available")


@pytest.fixture
def key_prefix():
    return f"chatrelay-test-{uuid.uuid4().hex[:8]}:"


class _StepClock:
    def __init__(self):
        self.now = datetime(2026, 10, 19, 14, 30, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.mark.asyncio
async def test_conversation_store_roundtrip(redis_url, key_prefix):
    store = ConversationStore(redis_url, key_prefix=key_prefix, clock=_StepClock())
    try:
        conversation = await store.create_conversation("alice")
        assert conversation.title == "Nouvelle conversation"
        await store.append_message(conversation.id, "user", "Salut")
        placeholder = await store.append_message(conversation.id, "assistant", "")
        await store.update_message(placeholder.id, "Bonjour")

        messages = await store.get_messages(conversation.id)
        assert [(m.role, m.content) for m in messages] == [("user", "Salut"), ("assistant", "Bonjour")]
        assert await store.count_messages(conversation.id) == 2
        assert [m.content for m in await store.recent_messages(conversation.id, 1)] == ["Bonjour"]

        await store.update_title(conversation.id, "Salutations")
        assert (await store.get_conversation(conversation.id)).title == "Salutations"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_list_conversations_by_last_activity(redis_url, key_prefix):
    store = ConversationStore(redis_url, key_prefix=key_prefix, clock=_StepClock())
    try:
        first = await store.create_conversation("bob")
        second = await store.create_conversation("bob")
        assert [c.id for c in await store.list_conversations("bob")] == [second.id, first.id]
        await store.touch_activity(first.id)
        assert [c.id for c in await store.list_conversations("bob")] == [first.id, second.id]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_get_conversation_missing_with_mock_redis():
    mock_client = MagicMock()
    mock_client.ping = AsyncMock()
    mock_client.hgetall = AsyncMock(return_value={})
    with patch("chatrelay.memory.conversations.aioredis") as m:
        m.from_url = MagicMock(return_value=mock_client)
        store = ConversationStore("redis://fake:6379/0")
        with pytest.raises(ConversationNotFoundError):
            await store.get_conversation("42")
        mock_client.hgetall.assert_awaited_once_with("chatrelay:conversation:42")


@pytest.mark.asyncio
async def test_update_message_is_single_hset_with_mock_redis():
    mock_client = MagicMock()
    mock_client.ping = AsyncMock()
    mock_client.hset = AsyncMock()
    with patch("chatrelay.memory.conversations.aioredis") as m:
        m.from_url = MagicMock(return_value=mock_client)
        store = ConversationStore("redis://fake:6379/0")
        await store.update_message("7", "Bonjour")
    mock_client.hset.assert_awaited_once_with("chatrelay:message:7", "content", "Bonjour")


@pytest.mark.asyncio
async def test_recent_messages_zero_limit():
    store = ConversationStore("redis://fake:6379/0")
    assert await store.recent_messages("1", 0) == []


@pytest.mark.asyncio
async def test_instruction_store_with_mock_redis():
    mock_client = MagicMock()
    mock_client.ping = AsyncMock()
    mock_client.get = AsyncMock(
        side_effect=[
            CustomInstruction(about_user="Chef").model_dump_json(),
            CustomInstruction(about_user="Chef", is_active=False).model_dump_json(),
            "not-json",
            None,
        ]
    )
    with patch("chatrelay.memory.instructions.aioredis") as m:
        m.from_url = MagicMock(return_value=mock_client)
        store = InstructionStore("redis://fake:6379/0")
        active = await store.get_active("alice")
        assert active is not None and active.about_user == "Chef"
        assert await store.get_active("alice") is None
        assert await store.get_active("alice") is None
        assert await store.get_active("alice") is None
    mock_client.get.assert_awaited_with("chatrelay:instructions:alice")


def test_hash_password_deterministic_with_salt():
    h1, s1 = _hash_password("secret")
    h2, s2 = _hash_password("secret", bytes.fromhex(s1))
    assert h1 == h2
    assert s1 == s2
    assert verify_password("secret", h1, s1) is True
    assert verify_password("wrong", h1, s1) is False
    assert verify_password("secret", h1, "not-hex") is False


def test_users_and_sessions(redis_url):
    import redis

    r = redis.from_url(redis_url, decode_responses=True)
    login = f"user-{uuid.uuid4().hex[:8]}"
    try:
        user = create_user(r, login, "pass", name="Alice")
        assert user.name == "Alice"
        with pytest.raises(ValueError):
            create_user(r, login, "other")
        assert verify_user(r, login, "bad") is None
        assert verify_user(r, login, "pass").id == login
        sid = create_session(r, login)
        assert get_session(r, sid) == {"login": login}
        assert user_for_session(r, sid).name == "Alice"
        assert user_for_session(r, None) is None
    finally:
        r.close()

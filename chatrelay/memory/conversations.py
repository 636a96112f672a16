"""Conversations and their messages in Redis. Each row is one hash; single-row updates are atomic."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel

from chatrelay.config.loader import PLACEHOLDER_TITLE

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "chatrelay:"


class ConversationNotFoundError(LookupError):
    pass


class Conversation(BaseModel):
    id: str
    user_id: str
    title: str = PLACEHOLDER_TITLE
    model: Optional[str] = None
    created_at: str = ""
    last_activity: str = ""


class MessageRecord(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str = ""
    created_at: str = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore:
    """Append-only messages per conversation, plus title and last-activity updates."""

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._clock = clock
        self._client: aioredis.Redis | None = None

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
            await self._client.ping()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _conversation_key(self, conversation_id: str) -> str:
        return f"{self._prefix}conversation:{conversation_id}"

    def _messages_key(self, conversation_id: str) -> str:
        return f"{self._prefix}conversation:{conversation_id}:messages"

    def _message_key(self, message_id: str) -> str:
        return f"{self._prefix}message:{message_id}"

    def _user_index_key(self, user_id: str) -> str:
        return f"{self._prefix}user:{user_id}:conversations"

    async def create_conversation(
        self, user_id: str, title: str = PLACEHOLDER_TITLE, model: str | None = None
    ) -> Conversation:
        await self.connect()
        conversation_id = str(await self._client.incr(f"{self._prefix}conversation:seq"))
        now = self._clock()
        conversation = Conversation(
            id=conversation_id,
            user_id=str(user_id),
            title=title,
            model=model,
            created_at=now.isoformat(),
            last_activity=now.isoformat(),
        )
        mapping = conversation.model_dump(exclude_none=True)
        pipe = self._client.pipeline()
        pipe.hset(self._conversation_key(conversation_id), mapping=mapping)
        pipe.zadd(self._user_index_key(conversation.user_id), {conversation_id: now.timestamp()})
        await pipe.execute()
        logger.info("conversation created", extra={"conversation_id": conversation_id})
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        await self.connect()
        data = await self._client.hgetall(self._conversation_key(conversation_id))
        if not data:
            raise ConversationNotFoundError(conversation_id)
        return Conversation(**data)

    async def list_conversations(self, user_id: str) -> list[Conversation]:
        """Conversations of a user, most recently active first."""
        await self.connect()
        ids = await self._client.zrevrange(self._user_index_key(str(user_id)), 0, -1)
        if not ids:
            return []
        pipe = self._client.pipeline()
        for conversation_id in ids:
            pipe.hgetall(self._conversation_key(conversation_id))
        rows = await pipe.execute()
        return [Conversation(**row) for row in rows if row]

    async def append_message(self, conversation_id: str, role: str, content: str) -> MessageRecord:
        await self.connect()
        message_id = str(await self._client.incr(f"{self._prefix}message:seq"))
        message = MessageRecord(
            id=message_id,
            conversation_id=str(conversation_id),
            role=role,
            content=content,
            created_at=self._clock().isoformat(),
        )
        pipe = self._client.pipeline()
        pipe.hset(self._message_key(message_id), mapping=message.model_dump())
        pipe.rpush(self._messages_key(conversation_id), message_id)
        await pipe.execute()
        return message

    async def update_message(self, message_id: str, content: str) -> None:
        await self.connect()
        await self._client.hset(self._message_key(message_id), "content", content)

    async def get_messages(self, conversation_id: str) -> list[MessageRecord]:
        """All messages in chronological order."""
        return await self._load_range(conversation_id, 0, -1)

    async def recent_messages(self, conversation_id: str, limit: int) -> list[MessageRecord]:
        """The last ``limit`` messages, still in chronological order."""
        if limit <= 0:
            return []
        return await self._load_range(conversation_id, -limit, -1)

    async def count_messages(self, conversation_id: str) -> int:
        await self.connect()
        return int(await self._client.llen(self._messages_key(conversation_id)))

    async def update_title(self, conversation_id: str, title: str) -> None:
        """Set the title and refresh last activity."""
        await self._touch(conversation_id, title=title)

    async def touch_activity(self, conversation_id: str) -> None:
        await self._touch(conversation_id)

    async def _touch(self, conversation_id: str, **fields: str) -> None:
        await self.connect()
        conversation = await self.get_conversation(conversation_id)
        now = self._clock()
        pipe = self._client.pipeline()
        pipe.hset(
            self._conversation_key(conversation_id),
            mapping={"last_activity": now.isoformat(), **fields},
        )
        pipe.zadd(self._user_index_key(conversation.user_id), {conversation.id: now.timestamp()})
        await pipe.execute()

    async def _load_range(self, conversation_id: str, start: int, end: int) -> list[MessageRecord]:
        await self.connect()
        ids = await self._client.lrange(self._messages_key(conversation_id), start, end)
        if not ids:
            return []
        pipe = self._client.pipeline()
        for message_id in ids:
            pipe.hgetall(self._message_key(message_id))
        rows = await pipe.execute()
        return [MessageRecord(**row) for row in rows if row]

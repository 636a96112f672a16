"""Per-user custom instructions ("about me" and response preferences). Stored in Redis by user_id."""

from __future__ import annotations

import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "chatrelay:"


class CustomInstruction(BaseModel):
    about_user: Optional[str] = None
    preference: Optional[str] = None
    is_active: bool = True


class InstructionStore:
    """One instruction record per user; only an active one is used for the system preamble."""

    def __init__(self, redis_url: str, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._client: aioredis.Redis | None = None

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}instructions:{user_id}"

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
            await self._client.ping()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def get_active(self, user_id: str) -> CustomInstruction | None:
        await self.connect()
        raw = await self._client.get(self._key(user_id))
        if not raw:
            return None
        try:
            instruction = CustomInstruction(**json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValidationError):
            logger.warning("ignoring malformed custom instruction", extra={"user_id": user_id})
            return None
        return instruction if instruction.is_active else None

    async def set(self, user_id: str, instruction: CustomInstruction) -> None:
        await self.connect()
        await self._client.set(self._key(user_id), instruction.model_dump_json())

    async def clear(self, user_id: str) -> None:
        await self.connect()
        await self._client.delete(self._key(user_id))
        logger.info("custom instruction cleared for user_id=%s", user_id)

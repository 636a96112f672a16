"""OpenAI-compatible chat completions (OpenRouter, Ollama, llama.cpp) via the OpenAI client."""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx
from openai import AsyncOpenAI

from chatrelay.models.streaming import ChatTurn

logger = logging.getLogger(__name__)


class OpenAICompatibleClient:
    """Thin wrapper over AsyncOpenAI: one streamed completion per call."""

    def __init__(
        self,
        base_url: str = "https://openrouter.ai/api/v1",
        api_key: str = "",
        timeout_seconds: float = 120.0,
    ) -> None:
        self._client = AsyncOpenAI(
            base_url=base_url,
            api_key=api_key or "missing",
            timeout=httpx.Timeout(timeout_seconds, connect=timeout_seconds),
        )

    def generate_stream(
        self,
        messages: list[ChatTurn],
        *,
        model: str,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        """Async generator of content deltas. The request is sent on the first pull."""

        async def _stream() -> AsyncIterator[str]:
            stream = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                stream=True,
            )
            async for chunk in stream:
                delta = chunk.choices[0].delta if chunk.choices else None
                if delta and getattr(delta, "content", None):
                    yield delta.content

        return _stream()

    async def close(self) -> None:
        await self._client.close()

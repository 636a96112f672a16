"""Model Gateway: single entrypoint that opens token sources for chat and title completions.

Streaming contract: see chatrelay.models.streaming."""

from __future__ import annotations

import logging
from typing import Optional

from chatrelay.config.loader import DEFAULT_MODEL
from chatrelay.models.local import OpenAICompatibleClient
from chatrelay.models.streaming import ChatTurn, TokenSource

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Je souhaite que tu génères un titre court et percutant, contenant au maximum 4 mots, "
    "qui résume avec précision l'échange suivant :\n\n{context}\n\n"
    "Le titre doit être concis et direct, sans phrase complète ni texte additionnel. "
    "Si l'échange est incohérent, illisible ou trop bref pour être résumé, ta seule réponse "
    "doit être : 'Demande de clarification'. Aucune autre information ne doit être ajoutée, "
    "même si cela semble pertinent. Si la conversation est trop complexe ou trop longue, "
    "réponds simplement 'Résumé de la discussion'."
)


def resolve_model(*candidates: Optional[str], default: str = DEFAULT_MODEL) -> str:
    """First non-empty candidate, else the default model."""
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return default


class ModelGateway:
    """Opens token sources. No model catalog: the caller's model id is passed through."""

    def __init__(
        self,
        client: OpenAICompatibleClient,
        default_model: str = DEFAULT_MODEL,
        title_model: str | None = None,
        temperature: float = 0.7,
    ) -> None:
        self._client = client
        self._default_model = default_model
        self._title_model = title_model or default_model
        self._temperature = temperature

    @property
    def default_model(self) -> str:
        return self._default_model

    def stream_chat(
        self,
        messages: list[ChatTurn],
        *,
        model: str | None = None,
        temperature: float | None = None,
    ) -> TokenSource:
        model_name = resolve_model(model, default=self._default_model)
        temp = self._temperature if temperature is None else temperature
        logger.info(
            "opening chat stream",
            extra={"model": model_name, "temperature": temp, "turns": len(messages)},
        )
        return self._client.generate_stream(messages, model=model_name, temperature=temp)

    def stream_title(self, context: str) -> TokenSource:
        """Summarization source: one user turn asking for a short title of the given exchange."""
        prompt = TITLE_PROMPT.format(context=context)
        return self.stream_chat([{"role": "user", "content": prompt}], model=self._title_model)

    async def close(self) -> None:
        await self._client.close()

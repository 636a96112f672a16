"""CompletionRecorder: the only path by which a relay turn touches persistence."""

from __future__ import annotations

import logging
from typing import Protocol

from chatrelay.memory.conversations import MessageRecord

logger = logging.getLogger(__name__)


class ConversationRepository(Protocol):
    async def append_message(self, conversation_id: str, role: str, content: str) -> MessageRecord:
        ...

    async def update_message(self, message_id: str, content: str) -> None:
        ...

    async def update_title(self, conversation_id: str, title: str) -> None:
        ...

    async def touch_activity(self, conversation_id: str) -> None:
        ...


class CompletionRecorder:
    """Records the user turn, the assistant placeholder, and the final assembled text.

    A placeholder is finalized at most once: the first call wins and later calls
    are ignored with a warning.
    """

    def __init__(self, store: ConversationRepository) -> None:
        self._store = store
        self._finalized: set[str] = set()

    async def append(self, conversation_id: str, role: str, content: str) -> MessageRecord:
        return await self._store.append_message(conversation_id, role, content)

    async def create_placeholder(self, conversation_id: str) -> MessageRecord:
        """Empty assistant message whose id stays stable while the relay runs."""
        return await self.append(conversation_id, "assistant", "")

    async def finalize(self, message: MessageRecord, content: str) -> bool:
        """Overwrite the placeholder content. Returns False if it was already finalized."""
        if message.id in self._finalized:
            logger.warning("placeholder already finalized", extra={"message_id": message.id})
            return False
        await self._store.update_message(message.id, content)
        self._finalized.add(message.id)
        logger.info(
            "assistant message recorded",
            extra={"conversation_id": message.conversation_id, "message_id": message.id, "length": len(content)},
        )
        return True

    async def update_title(self, conversation_id: str, title: str) -> None:
        await self._store.update_title(conversation_id, title)

    async def touch_activity(self, conversation_id: str) -> None:
        await self._store.touch_activity(conversation_id)

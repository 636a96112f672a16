"""Conversation channel names and who may subscribe to them."""

from __future__ import annotations

from typing import Optional

from chatrelay.memory.conversations import Conversation

CHANNEL_PREFIX = "chat."


def channel_for(conversation_id: str | int) -> str:
    return f"{CHANNEL_PREFIX}{conversation_id}"


def conversation_id_from_channel(channel: str) -> Optional[str]:
    if not channel.startswith(CHANNEL_PREFIX):
        return None
    conversation_id = channel[len(CHANNEL_PREFIX):]
    return conversation_id or None


def can_subscribe(user_id: str, channel: str, conversation: Optional[Conversation]) -> bool:
    """Only the owner of the conversation encoded in the channel may receive its events."""
    if conversation is None:
        return False
    if conversation_id_from_channel(channel) != conversation.id:
        return False
    return str(conversation.user_id) == str(user_id)

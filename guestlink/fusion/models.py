"""Conversation timeline records shared by owners and guest sessions."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class MessageTag:
    """Metadata marking a message as written through a guest session."""

    session_id: str
    link_id: str
    is_guest_greeting: bool = False
    intent: str | None = None
    participant_name: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "linkId": self.link_id,
            "isGuestGreeting": self.is_guest_greeting,
            "intent": self.intent,
            "participantName": self.participant_name,
        }


@dataclass
class ConversationMessage:
    """One entry in a conversation timeline."""

    conversation_id: str
    role: str  # user (owner), guest, assistant
    content: str
    created_at: float
    sender_id: str | None = None
    tag: MessageTag | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_guest_greeting(self) -> bool:
        return self.tag is not None and self.tag.is_guest_greeting

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "sender_id": self.sender_id,
            "content": self.content,
            "created_at": self.created_at,
            "tag": self.tag.as_dict() if self.tag else None,
            "metadata": dict(self.metadata),
        }


@dataclass
class Conversation:
    """An owner's conversation; guest sessions append into it."""

    conversation_id: str
    owner_id: str
    created_at: float
    messages: list[ConversationMessage] = field(default_factory=list)
    # Created for a link without a target conversation
    synthesized: bool = False

    @property
    def last_timestamp(self) -> float:
        return self.messages[-1].created_at if self.messages else 0.0

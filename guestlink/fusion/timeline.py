"""Conversation timeline: serialized, strictly ordered writes.

Guest sessions do not get conversations of their own: their messages are
appended into the owner's conversation they were bound to at redemption.
Every writer (owner, any guest session, the assistant) goes through this
class, which holds a per-conversation lock so timestamps are strictly
increasing and history order is deterministic.  Writes to different
conversations never contend.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from guestlink.errors import InternalError, NotFoundError
from guestlink.fusion.models import ConversationMessage, MessageTag
from guestlink.locks import KeyedLocks
from guestlink.storage import MemoryStore

if TYPE_CHECKING:
    from guestlink.links.models import Link
    from guestlink.sessions.models import GuestSession

logger = logging.getLogger(__name__)

# Minimum spacing between consecutive timestamps in one conversation
_TICK = 1e-6

ROLE_OWNER = "user"
ROLE_GUEST = "guest"
ROLE_ASSISTANT = "assistant"


def tag_for(session: GuestSession, link: Link, greeting: bool = False) -> MessageTag:
    """Build the guest tag carried by every message written through *session*."""
    return MessageTag(
        session_id=session.session_id,
        link_id=link.link_id,
        is_guest_greeting=greeting,
        intent=link.payload.chat_intent,
        participant_name=session.participant.name,
    )


class ConversationTimeline:
    """Append-only, per-conversation serialized message log."""

    def __init__(self, store: MemoryStore, locks: KeyedLocks | None = None):
        self._store = store
        self._locks = locks or KeyedLocks()

    @contextmanager
    def locked(self, conversation_id: str) -> Iterator[None]:
        """Hold the conversation's write lock across several steps."""
        with self._locks.hold(f"conversation:{conversation_id}"):
            yield

    def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        sender_id: str | None = None,
        tag: MessageTag | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        """Append a message. Takes the conversation lock itself."""
        with self.locked(conversation_id):
            return self.append_unlocked(conversation_id, role, content, sender_id, tag, metadata)

    def append_unlocked(
        self,
        conversation_id: str,
        role: str,
        content: str,
        sender_id: str | None = None,
        tag: MessageTag | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        """Append while the caller already holds ``locked(conversation_id)``."""
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise InternalError(f"bound conversation {conversation_id} missing")

        created_at = max(time.time(), conversation.last_timestamp + _TICK)
        message = ConversationMessage(
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=created_at,
            sender_id=sender_id,
            tag=tag,
            metadata=metadata or {},
        )
        self._store.insert_message(message)
        return message

    def append_owner_message(self, conversation_id: str, owner_id: str, content: str) -> ConversationMessage:
        """Owner-side write into their own conversation."""
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None or conversation.owner_id != owner_id:
            raise NotFoundError(f"conversation {conversation_id} not owned by {owner_id}")
        return self.append(conversation_id, ROLE_OWNER, content, sender_id=owner_id)

    def append_greeting(self, session: GuestSession, link: Link, text: str) -> ConversationMessage:
        """Opening message, attributed to the agent rather than the guest."""
        return self.append(
            session.conversation_id,
            ROLE_ASSISTANT,
            text,
            sender_id=link.agent_id or ROLE_ASSISTANT,
            tag=tag_for(session, link, greeting=True),
            metadata={"guestGreeting": True},
        )

    def append_assistant_reply(
        self,
        session: GuestSession,
        link: Link,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        return self.append(
            session.conversation_id,
            ROLE_ASSISTANT,
            text,
            sender_id=link.agent_id or ROLE_ASSISTANT,
            tag=tag_for(session, link),
            metadata=metadata,
        )

    def transcript(self, conversation_id: str) -> list[ConversationMessage]:
        return self._store.list_messages(conversation_id)

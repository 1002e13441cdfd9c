"""Request-scoped augmentation handed to the reasoning engine.

The link's system-prompt override and chat intent are recomputed from the
link on every guest message and travel only with the request.  They are
never written into the conversation transcript.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from guestlink.links.models import Link
    from guestlink.sessions.models import GuestSession


@dataclass(frozen=True)
class ReasoningRequest:
    """One guest turn as the reasoning engine sees it."""

    conversation_id: str
    message: str
    agent_id: str | None = None
    system_prompt_override: str | None = None
    chat_intent: str | None = None
    session_context: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "conversationId": self.conversation_id,
            "agentId": self.agent_id,
            "sessionType": "guest_link",
            "systemPromptOverride": self.system_prompt_override,
            "chatIntent": self.chat_intent,
            "sessionContext": dict(self.session_context),
        }


def intent_statement(intent: str | None) -> str | None:
    """Render the link intent as a goal statement for the agent."""
    if not intent or not intent.strip():
        return None
    return f"Goal for this conversation: {intent.strip()}"


def build_reasoning_request(link: Link, session: GuestSession, message: str) -> ReasoningRequest:
    """Derive the engine request for *message* from the live link state."""
    override = link.payload.system_prompt_override
    return ReasoningRequest(
        conversation_id=session.conversation_id,
        message=message,
        agent_id=link.agent_id,
        system_prompt_override=override if override and override.strip() else None,
        chat_intent=intent_statement(link.payload.chat_intent),
        session_context={
            "session_id": session.session_id,
            "link_id": link.link_id,
            "participant_name": session.participant.name,
            "is_guest_session": True,
            "max_messages": link.policy.max_messages_per_session,
            "current_messages": session.message_count,
        },
    )

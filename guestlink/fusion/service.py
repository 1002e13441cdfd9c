"""Guest chat turn: accept the guest message, then fetch the assistant reply.

The guest message is committed to the bound conversation before the
reasoning engine is called, so a failing engine never loses guest input.
On failure an apology is written in the assistant's place and the caller
gets ``InternalError``.
"""

from __future__ import annotations

import logging
from typing import Any

from guestlink.errors import InternalError
from guestlink.fusion.context import build_reasoning_request
from guestlink.fusion.timeline import ConversationTimeline
from guestlink.reasoning import ReasoningEngine, ReasoningFailure
from guestlink.sessions.manager import SessionManager

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "I apologize, but I'm having trouble responding right now. Please try again in a moment."


class GuestChatService:
    """Post Guest Message, end to end."""

    def __init__(self, sessions: SessionManager, timeline: ConversationTimeline, engine: ReasoningEngine):
        self._sessions = sessions
        self._timeline = timeline
        self._engine = engine

    def post_message(
        self,
        session_token: str | None,
        content: Any,
        attachments: list[Any] | None = None,
        origin_address: str | None = None,
    ) -> dict[str, Any]:
        accepted = self._sessions.append_guest_message(session_token, content, attachments, origin_address)
        session, link = accepted.session, accepted.link

        request = build_reasoning_request(link, session, accepted.message.content)
        try:
            reply = self._engine.generate(request)
        except ReasoningFailure as e:
            self._timeline.append_assistant_reply(session, link, APOLOGY_MESSAGE, metadata={"error": True})
            raise InternalError(f"reasoning failed for session {session.session_id}: {e}") from e

        assistant = self._timeline.append_assistant_reply(session, link, reply.content, metadata=reply.metadata)
        return {
            "accepted": True,
            "message": accepted.message.as_dict(),
            "reply": assistant.as_dict(),
            "message_count": session.message_count,
            "remaining_messages": accepted.remaining_messages,
        }

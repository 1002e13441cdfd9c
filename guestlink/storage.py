"""In-process datastore for links, sessions, routing rules and conversations.

Stands in for the external relational store.  Only the tables the engine
needs exist: Link, Session, Rule, plus the owner conversations guest
sessions are fused into.  A single ``threading.RLock`` guards the tables;
callers that need multi-step atomicity (count-then-insert) hold their own
per-key lock around the sequence.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import TYPE_CHECKING

from guestlink.fusion.models import Conversation, ConversationMessage
from guestlink.sessions.models import GuestSession, SessionStatus

if TYPE_CHECKING:
    from guestlink.links.models import Link
    from guestlink.webhooks.rules import RoutingRule


class MemoryStore:
    """Thread-safe in-memory tables."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._links: dict[str, Link] = {}
        self._sessions: dict[str, GuestSession] = {}
        self._sessions_by_handle: dict[str, str] = {}
        self._rules: dict[str, RoutingRule] = {}
        self._conversations: dict[str, Conversation] = {}

    # ── Conversations ────────────────────────────────────────────────────

    def create_conversation(
        self,
        owner_id: str,
        conversation_id: str | None = None,
        synthesized: bool = False,
    ) -> Conversation:
        conversation = Conversation(
            conversation_id=conversation_id or str(uuid.uuid4()),
            owner_id=owner_id,
            created_at=time.time(),
            synthesized=synthesized,
        )
        with self._lock:
            if conversation.conversation_id in self._conversations:
                raise ValueError(f"conversation {conversation.conversation_id} already exists")
            self._conversations[conversation.conversation_id] = conversation
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def insert_message(self, message: ConversationMessage) -> None:
        with self._lock:
            conversation = self._conversations.get(message.conversation_id)
            if conversation is None:
                raise KeyError(message.conversation_id)
            conversation.messages.append(message)

    def list_messages(self, conversation_id: str) -> list[ConversationMessage]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return list(conversation.messages) if conversation else []

    # ── Links ────────────────────────────────────────────────────────────

    def save_link(self, link: Link) -> None:
        with self._lock:
            self._links[link.link_id] = link

    def get_link(self, link_id: str) -> Link | None:
        with self._lock:
            return self._links.get(link_id)

    def get_link_by_handle(self, token_handle: str) -> Link | None:
        with self._lock:
            for link in self._links.values():
                if link.token_handle == token_handle:
                    return link
            return None

    def list_links(self, owner_id: str | None = None) -> list[Link]:
        with self._lock:
            links = [l for l in self._links.values() if owner_id is None or l.owner_id == owner_id]
        return sorted(links, key=lambda l: l.created_at, reverse=True)

    # ── Sessions ─────────────────────────────────────────────────────────

    def save_session(self, session: GuestSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session
            self._sessions_by_handle[session.token_handle] = session.session_id

    def get_session(self, session_id: str) -> GuestSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def get_session_by_handle(self, token_handle: str) -> GuestSession | None:
        with self._lock:
            session_id = self._sessions_by_handle.get(token_handle)
            return self._sessions.get(session_id) if session_id else None

    def list_sessions(self, link_id: str | None = None, status: SessionStatus | None = None) -> list[GuestSession]:
        with self._lock:
            sessions = [
                s
                for s in self._sessions.values()
                if (link_id is None or s.link_id == link_id) and (status is None or s.status == status)
            ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def count_active_sessions(self, link_id: str) -> int:
        with self._lock:
            return sum(
                1 for s in self._sessions.values()
                if s.link_id == link_id and s.status in (SessionStatus.PENDING, SessionStatus.ACTIVE)
            )

    # ── Routing rules ────────────────────────────────────────────────────

    def save_rule(self, rule: RoutingRule) -> None:
        with self._lock:
            self._rules[rule.rule_id] = rule

    def get_rule(self, rule_id: str) -> RoutingRule | None:
        with self._lock:
            return self._rules.get(rule_id)

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def list_rules(self, provider: str | None = None) -> list[RoutingRule]:
        """Active rules for *provider* (or global), ascending priority."""
        with self._lock:
            rules = [
                r for r in self._rules.values()
                if r.is_active and (r.provider is None or provider is None or r.provider == provider)
            ]
        return sorted(rules, key=lambda r: (r.priority, r.created_at, r.rule_id))

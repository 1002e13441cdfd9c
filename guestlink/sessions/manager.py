"""Session manager: the guest session state machine.

PENDING -> ACTIVE -> {EXPIRED | ENDED}; CAPACITY_REJECTED is terminal and
reached without ever entering ACTIVE (it is audited, not persisted).

Security contract:
- Redemption and session lookup fail with generic errors (no enumeration)
- Capacity check and insert happen under a per-link lock, so the (N+1)-th
  concurrent redemption of a link capped at N always fails
- Link expiry is re-checked on every operation, never cached
- Guest writes are validated before any rate counter is charged, then
  appended under the bound conversation's lock
- Session secrets are dropped from the vault once a session is terminal
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from guestlink.errors import (
    CapacityExceeded,
    InternalError,
    InvalidLink,
    InvalidSession,
    LimitExceeded,
    NotFoundError,
    ValidationError,
)
from guestlink.fusion.models import ConversationMessage
from guestlink.fusion.timeline import ROLE_GUEST, ConversationTimeline, tag_for
from guestlink.guard.rate_limit import RateGuard
from guestlink.guard.validator import PayloadLimits, validate_guest_message
from guestlink.links.models import Link
from guestlink.links.registry import LinkRegistry
from guestlink.locks import KeyedLocks
from guestlink.logging_config import request_id_var
from guestlink.sessions.models import (
    GuestSession,
    ParticipantMeta,
    SessionResult,
    SessionStatus,
    new_session,
)
from guestlink.storage import MemoryStore
from guestlink.vault.vault import TokenKind, TokenVault

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

_MIN_RATING = 1
_MAX_RATING = 5
_MAX_FEEDBACK_CHARS = 2000
_MAX_END_REASON_CHARS = 100


def _check_feedback(reason: Any, rating: Any, feedback: Any) -> None:
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("end reason must be a string", field="end_reason")
    if rating is not None and (
        isinstance(rating, bool) or not isinstance(rating, int) or not _MIN_RATING <= rating <= _MAX_RATING
    ):
        raise ValidationError(f"rating must be between {_MIN_RATING} and {_MAX_RATING}", field="satisfaction_rating")
    if feedback is not None and (not isinstance(feedback, str) or len(feedback) > _MAX_FEEDBACK_CHARS):
        raise ValidationError(f"feedback must be text of at most {_MAX_FEEDBACK_CHARS} chars", field="feedback_text")


@dataclass
class AppendResult:
    """An accepted guest message plus the session and link it went through."""

    message: ConversationMessage
    session: GuestSession
    link: Link

    @property
    def remaining_messages(self) -> int:
        return max(0, self.link.policy.max_messages_per_session - self.session.message_count)


@dataclass
class SweepReport:
    links_deactivated: int = 0
    sessions_expired: int = 0
    sessions_timed_out: int = 0
    counters_evicted: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "links_deactivated": self.links_deactivated,
            "sessions_expired": self.sessions_expired,
            "sessions_timed_out": self.sessions_timed_out,
            "counters_evicted": self.counters_evicted,
        }


class SessionManager:
    """Creates, validates, feeds and terminates guest sessions."""

    def __init__(
        self,
        store: MemoryStore,
        vault: TokenVault,
        registry: LinkRegistry,
        timeline: ConversationTimeline,
        guard: RateGuard,
        limits: PayloadLimits | None = None,
        locks: KeyedLocks | None = None,
    ):
        self._store = store
        self._vault = vault
        self._registry = registry
        self._timeline = timeline
        self._guard = guard
        self._limits = limits or PayloadLimits()
        self._locks = locks or KeyedLocks()

    # ── Redemption ───────────────────────────────────────────────────────

    def create_session(
        self,
        token: str | None,
        participant: ParticipantMeta | None = None,
        origin_host: str | None = None,
    ) -> SessionResult:
        """Redeem a link token into a new ACTIVE session."""
        link = self._registry.get_link_by_token(token)
        participant = participant or ParticipantMeta()

        if not link.allows_origin(origin_host):
            self._audit("redeem", link, outcome="origin-rejected", origin=origin_host or "-")
            raise InvalidLink(f"origin {origin_host} not allowed for link {link.link_id}")

        with self._locks.hold(f"link:{link.link_id}"):
            now = time.time()
            # Expiry may have passed while waiting for the lock
            if not link.is_live(now):
                self._audit("redeem", link, outcome="expired")
                raise InvalidLink(f"link {link.link_id} expired")

            self._release_stale_sessions(link, now)
            active = self._store.count_active_sessions(link.link_id)
            if active >= link.policy.max_sessions:
                self._audit(
                    "redeem",
                    link,
                    outcome=SessionStatus.CAPACITY_REJECTED.value,
                    active=active,
                    cap=link.policy.max_sessions,
                )
                raise CapacityExceeded(f"link {link.link_id} at {active}/{link.policy.max_sessions} sessions")

            conversation_id, synthesized = self._bind_conversation(link)
            minted = self._vault.mint(TokenKind.SESSION)
            session = new_session(
                link_id=link.link_id,
                token_handle=minted.handle,
                conversation_id=conversation_id,
                participant=participant,
                conversation_synthesized=synthesized,
            )
            session.status = SessionStatus.ACTIVE
            self._store.save_session(session)

            link.session_count += 1
            link.updated_at = now
            self._store.save_link(link)

            opening = link.payload.opening_message
            if opening:
                self._timeline.append_greeting(session, link, opening)

        self._audit(
            "redeem",
            link,
            outcome="created",
            session_id=session.session_id,
            synthesized=synthesized,
            origin=participant.origin_address,
        )
        return SessionResult(
            session_id=session.session_id,
            session_token=minted.token,
            conversation_id=conversation_id,
            status=session.status,
            opening_message=opening,
            agent_id=link.agent_id,
            expires_at=link.expires_at,
            max_messages=link.policy.max_messages_per_session,
        )

    def _bind_conversation(self, link: Link) -> tuple[str, bool]:
        """Pick the conversation a new session writes into."""
        if link.target_conversation_id is not None:
            if self._store.get_conversation(link.target_conversation_id) is None:
                raise InternalError(f"target conversation {link.target_conversation_id} missing")
            return link.target_conversation_id, False

        # Links without a target get a standalone conversation per session
        conversation = self._store.create_conversation(owner_id=link.owner_id, synthesized=True)
        logger.info("Synthesized conversation %s for link %s", conversation.conversation_id[:8], link.link_id[:8])
        return conversation.conversation_id, True

    def _release_stale_sessions(self, link: Link, now: float) -> None:
        """End idle sessions of *link* so they stop holding capacity."""
        timeout = link.policy.session_timeout_minutes
        for session in self._store.list_sessions(link_id=link.link_id, status=SessionStatus.ACTIVE):
            if session.is_idle(timeout, now):
                self._finish(session, SessionStatus.ENDED, "timeout", now)

    # ── Session checks ───────────────────────────────────────────────────

    def _authenticate(self, session_token: str | None) -> tuple[GuestSession, Link]:
        handle = self._vault.resolve(session_token, TokenKind.SESSION)
        session = self._store.get_session_by_handle(handle) if handle else None
        if session is None:
            raise InvalidSession("session token unresolved")

        link = self._store.get_link(session.link_id)
        self._check_live(session, link, time.time())
        return session, link

    def _check_live(self, session: GuestSession, link: Link | None, now: float) -> None:
        """Raise ``InvalidSession`` unless *session* may act right now.

        Expired links and inactivity timeouts move the session to its
        terminal state as a side effect.
        """
        if session.status != SessionStatus.ACTIVE:
            raise InvalidSession(f"session {session.session_id} is {session.status.value}")
        if link is None or not link.is_live(now):
            self._finish(session, SessionStatus.EXPIRED, "link_expired", now)
            raise InvalidSession(f"session {session.session_id} link expired")
        if session.is_idle(link.policy.session_timeout_minutes, now):
            self._finish(session, SessionStatus.ENDED, "timeout", now)
            raise InvalidSession(f"session {session.session_id} timed out")

    def validate_session(self, session_token: str | None) -> GuestSession:
        """Return the session for *session_token* if it is ACTIVE and live."""
        session, _ = self._authenticate(session_token)
        return session

    # ── Guest writes ─────────────────────────────────────────────────────

    def append_guest_message(
        self,
        session_token: str | None,
        content: Any,
        attachments: list[Any] | None = None,
        origin_address: str | None = None,
    ) -> AppendResult:
        """Validate, rate-check and append one guest message."""
        session, link = self._authenticate(session_token)
        cap = link.policy.max_messages_per_session
        if session.message_count >= cap:
            raise LimitExceeded(f"session {session.session_id} reached {cap} messages")

        validated = validate_guest_message(content, attachments, self._limits)
        self._guard.charge(
            origin_address or session.participant.origin_address,
            link.link_id,
            link.policy.rate_limit_per_minute,
        )

        metadata: dict[str, Any] = {}
        if validated.attachments:
            metadata["attachments"] = [
                {"filename": a.filename, "content_type": a.content_type, "size_bytes": a.size_bytes}
                for a in validated.attachments
            ]
        if validated.flags:
            metadata["flags"] = list(validated.flags)

        with self._timeline.locked(session.conversation_id):
            # Re-check under the lock: another writer may have used the last slot
            self._check_live(session, link, time.time())
            if session.message_count >= cap:
                raise LimitExceeded(f"session {session.session_id} reached {cap} messages")

            message = self._timeline.append_unlocked(
                session.conversation_id,
                ROLE_GUEST,
                validated.text,
                sender_id=session.session_id,
                tag=tag_for(session, link),
                metadata=metadata,
            )
            session.message_count += 1
            session.last_activity = message.created_at
            self._store.save_session(session)

        return AppendResult(message=message, session=session, link=link)

    # ── Termination ──────────────────────────────────────────────────────

    def end_session(
        self,
        session_token: str | None,
        reason: str = "user_ended",
        satisfaction_rating: int | None = None,
        feedback_text: str | None = None,
    ) -> GuestSession:
        """Explicitly end a session, optionally recording feedback.

        The token is authenticated before the feedback is looked at, so a
        dead token always yields ``InvalidSession``.
        """
        session, link = self._authenticate(session_token)
        _check_feedback(reason, satisfaction_rating, feedback_text)

        with self._timeline.locked(session.conversation_id):
            self._check_live(session, link, time.time())
            session.satisfaction_rating = satisfaction_rating
            session.feedback_text = feedback_text.strip() if feedback_text else None
            self._finish(
                session, SessionStatus.ENDED, (reason or "user_ended")[:_MAX_END_REASON_CHARS], time.time()
            )
        return session

    # ── Owner-side session management ────────────────────────────────────

    def get_session_for_owner(self, owner_id: str, link_id: str, session_id: str) -> GuestSession:
        """Return one session of a link the owner holds."""
        self._registry.get_owned_link(owner_id, link_id)
        session = self._store.get_session(session_id)
        if session is None or session.link_id != link_id:
            raise NotFoundError(f"session {session_id} not found on link {link_id}")
        return session

    def end_session_for_owner(self, owner_id: str, link_id: str, session_id: str) -> GuestSession:
        """End a live guest session on the owner's behalf.

        Ending an already-terminal session is a no-op that returns it as is.
        """
        session = self.get_session_for_owner(owner_id, link_id, session_id)
        with self._locks.hold(f"link:{link_id}"), self._timeline.locked(session.conversation_id):
            if session.status in (SessionStatus.ACTIVE, SessionStatus.PENDING):
                self._finish(session, SessionStatus.ENDED, "manually_ended", time.time())
        return session

    def _finish(self, session: GuestSession, status: SessionStatus, reason: str, now: float) -> None:
        session.finish(status, reason, now)
        self._store.save_session(session)
        self._vault.revoke(session.token_handle)
        logger.info(
            "SESSION_AUDIT action=finish session_id=%s link_id=%s status=%s reason=%s messages=%d request_id=%s",
            session.session_id,
            session.link_id,
            session.status.value,
            session.end_reason,
            session.message_count,
            request_id_var.get(),
        )

    # ── Maintenance ──────────────────────────────────────────────────────

    def active_session_count(self, link_id: str) -> int:
        return self._store.count_active_sessions(link_id)

    def sweep(self) -> SweepReport:
        """Reclaim expired links, stale sessions and closed rate windows."""
        report = SweepReport()
        report.links_deactivated = len(self._registry.sweep_expired())

        now = time.time()
        for session in self._store.list_sessions(status=SessionStatus.ACTIVE):
            with self._locks.hold(f"link:{session.link_id}"):
                if session.status != SessionStatus.ACTIVE:
                    continue
                link = self._store.get_link(session.link_id)
                if link is None or not link.is_live(now):
                    self._finish(session, SessionStatus.EXPIRED, "link_expired", now)
                    report.sessions_expired += 1
                elif session.is_idle(link.policy.session_timeout_minutes, now):
                    self._finish(session, SessionStatus.ENDED, "timeout", now)
                    report.sessions_timed_out += 1

        report.counters_evicted = self._guard.evict_expired()
        if report.links_deactivated or report.sessions_expired or report.sessions_timed_out:
            logger.info("Sweep complete: %s", report.as_dict())
        return report

    def _audit(self, action: str, link: Link, **fields: Any) -> None:
        extra = " ".join(f"{k}={v}" for k, v in fields.items())
        logger.info(
            "SESSION_AUDIT action=%s link_id=%s %s request_id=%s",
            action,
            link.link_id,
            extra,
            request_id_var.get(),
        )

"""Guest session data models.

Security contract:
- A guest can only act through its session token (vault-backed, 256-bit)
- Participant metadata is advisory: never used for authorization
- The bound conversation id is fixed at creation and never reassigned
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

# Advisory metadata caps; longer values are truncated, not rejected
_MAX_NAME_CHARS = 100
_MAX_IDENTIFIER_CHARS = 200
_MAX_USER_AGENT_CHARS = 512
_MAX_REFERRER_CHARS = 2048


class SessionStatus(str, Enum):
    """Guest session lifecycle states."""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"    # Link expired or revoked (sweep / lazy check)
    ENDED = "ended"        # Explicit termination or inactivity timeout
    CAPACITY_REJECTED = "capacity-rejected"  # Terminal, never entered ACTIVE


TERMINAL_STATUSES = frozenset(
    {SessionStatus.EXPIRED, SessionStatus.ENDED, SessionStatus.CAPACITY_REJECTED}
)


def _clip(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value[:limit] or None


@dataclass
class ParticipantMeta:
    """Who is on the other end, as far as they tell us."""
    identifier: str | None = None
    name: str | None = None
    origin_address: str = "unknown"
    user_agent: str | None = None
    referrer: str | None = None

    def __post_init__(self) -> None:
        self.identifier = _clip(self.identifier, _MAX_IDENTIFIER_CHARS)
        self.name = _clip(self.name, _MAX_NAME_CHARS)
        self.user_agent = _clip(self.user_agent, _MAX_USER_AGENT_CHARS)
        self.referrer = _clip(self.referrer, _MAX_REFERRER_CHARS)
        self.origin_address = (self.origin_address or "unknown")[:64]


@dataclass
class GuestSession:
    """One anonymous participant's engagement with a Link."""
    session_id: str
    link_id: str
    token_handle: str
    conversation_id: str
    participant: ParticipantMeta = field(default_factory=ParticipantMeta)
    status: SessionStatus = SessionStatus.PENDING
    message_count: int = 0
    created_at: float = 0.0
    last_activity: float = 0.0
    ended_at: float | None = None
    end_reason: str | None = None
    satisfaction_rating: int | None = None
    feedback_text: str | None = None
    # True when the link had no target conversation and one was synthesized
    conversation_synthesized: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def is_idle(self, timeout_minutes: int, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.last_activity + timeout_minutes * 60 <= now

    def duration(self, now: float | None = None) -> float:
        end = self.ended_at if self.ended_at is not None else (time.time() if now is None else now)
        return max(0.0, end - self.created_at)

    def finish(self, status: SessionStatus, reason: str, now: float | None = None) -> None:
        """Move to a terminal status. No-op if already terminal."""
        if self.status in TERMINAL_STATUSES:
            return
        self.status = status
        self.end_reason = reason
        self.ended_at = time.time() if now is None else now

    def details(self) -> dict:
        """Owner-facing session summary."""
        return {
            "session_id": self.session_id,
            "participant_name": self.participant.name,
            "started_at": self.created_at,
            "ended_at": self.ended_at,
            "message_count": self.message_count,
            "duration_seconds": round(self.duration(), 3),
            "status": self.status.value,
            "end_reason": self.end_reason,
            "satisfaction_rating": self.satisfaction_rating,
        }


def new_session(
    link_id: str,
    token_handle: str,
    conversation_id: str,
    participant: ParticipantMeta | None = None,
    conversation_synthesized: bool = False,
) -> GuestSession:
    """Create a new, not yet persisted, session in PENDING state."""
    now = time.time()
    return GuestSession(
        session_id=str(uuid.uuid4()),
        link_id=link_id,
        token_handle=token_handle,
        conversation_id=conversation_id,
        participant=participant or ParticipantMeta(),
        status=SessionStatus.PENDING,
        created_at=now,
        last_activity=now,
        conversation_synthesized=conversation_synthesized,
    )


@dataclass
class SessionResult:
    """What a successful redemption hands back to the guest."""
    session_id: str
    session_token: str = field(repr=False)
    conversation_id: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    opening_message: str | None = None
    agent_id: str | None = None
    expires_at: float = 0.0
    max_messages: int = 0

    def as_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "session_token": self.session_token,
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "opening_message": self.opening_message,
            "agent_id": self.agent_id,
            "expires_at": self.expires_at,
            "max_messages": self.max_messages,
            "message_count": 0,
        }

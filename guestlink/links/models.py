"""Link data models.

A Link is a standing, owner-created invitation to chat.  Policy and
behavioral payload are validated pydantic models with explicit optional
fields and length caps; the Link record itself is a plain dataclass.

Security contract:
- The link record holds only the vault handle of its token, never the token
- ``public_view()`` is the only representation handed to callers
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, field_validator

from guestlink.config import settings

MAX_TITLE_CHARS = 200
MAX_DESCRIPTION_CHARS = 1000
MAX_INTENT_CHARS = 2000
MAX_OVERRIDE_CHARS = 4000
MAX_OPENING_MESSAGE_CHARS = 2000
MAX_ALLOWED_DOMAINS = 20


class LinkPolicy(BaseModel):
    """Capacity, rate and expiry policy for a link."""

    expires_in_hours: float | None = Field(default=None, gt=0)
    max_sessions: int = Field(default_factory=lambda: settings.default_max_sessions, ge=1, le=10_000)
    max_messages_per_session: int = Field(
        default_factory=lambda: settings.default_max_messages_per_session, ge=1, le=100_000
    )
    rate_limit_per_minute: int = Field(
        default_factory=lambda: settings.default_rate_limit_per_minute, ge=1, le=10_000
    )
    session_timeout_minutes: int = Field(
        default_factory=lambda: settings.default_session_timeout_minutes, ge=1, le=24 * 60
    )
    allowed_domains: list[str] | None = None

    @field_validator("allowed_domains")
    @classmethod
    def _normalize_domains(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        if len(value) > MAX_ALLOWED_DOMAINS:
            raise ValueError(f"at most {MAX_ALLOWED_DOMAINS} allowed domains")
        domains = [d.strip().lower().lstrip(".") for d in value if d and d.strip()]
        return domains or None


class BehavioralPayload(BaseModel):
    """Link-scoped custom instructions applied to every session of the link."""

    chat_intent: str | None = Field(default=None, max_length=MAX_INTENT_CHARS)
    system_prompt_override: str | None = Field(default=None, max_length=MAX_OVERRIDE_CHARS)
    initial_agent_message: str | None = Field(default=None, max_length=MAX_OPENING_MESSAGE_CHARS)
    send_initial_message: bool = False

    @property
    def opening_message(self) -> str | None:
        """The message to auto-send on redemption, if any."""
        if self.send_initial_message and self.initial_agent_message and self.initial_agent_message.strip():
            return self.initial_agent_message
        return None


@dataclass
class Link:
    """A durable invitation that can mint guest sessions."""

    link_id: str
    owner_id: str
    title: str
    token_handle: str
    expires_at: float
    policy: LinkPolicy
    payload: BehavioralPayload
    target_conversation_id: str | None = None
    agent_id: str | None = None
    description: str | None = None
    is_active: bool = True
    session_count: int = 0  # total redemptions, all statuses
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def is_live(self, now: float | None = None) -> bool:
        return self.is_active and not self.is_expired(now)

    def allows_origin(self, origin_host: str | None) -> bool:
        """Whether a request from *origin_host* may redeem this link.

        No allow-list means any origin.  Otherwise the host must equal an
        allowed domain or be a subdomain of one.
        """
        domains = self.policy.allowed_domains
        if not domains:
            return True
        if not origin_host:
            return False
        host = origin_host.strip().lower().rstrip(".")
        return any(host == d or host.endswith("." + d) for d in domains)

    def public_view(self) -> dict[str, Any]:
        """Owner-facing fields. Excludes the vault handle."""
        return {
            "id": self.link_id,
            "title": self.title,
            "description": self.description,
            "agent_id": self.agent_id,
            "target_conversation_id": self.target_conversation_id,
            "expires_at": self.expires_at,
            "is_active": self.is_active,
            "session_count": self.session_count,
            "created_at": self.created_at,
            "max_sessions": self.policy.max_sessions,
            "max_messages_per_session": self.policy.max_messages_per_session,
            "rate_limit_per_minute": self.policy.rate_limit_per_minute,
            "session_timeout_minutes": self.policy.session_timeout_minutes,
            "allowed_domains": self.policy.allowed_domains,
            "chat_intent": self.payload.chat_intent,
            "send_initial_message": self.payload.send_initial_message,
            "initial_agent_message": self.payload.initial_agent_message,
            "has_system_prompt_override": bool(self.payload.system_prompt_override),
        }

    def preview(self) -> dict[str, Any]:
        """Anonymous-facing fields shown before redemption."""
        return {
            "title": self.title,
            "description": self.description,
            "agent_id": self.agent_id,
            "expires_at": self.expires_at,
            "max_messages_per_session": self.policy.max_messages_per_session,
            "session_timeout_minutes": self.policy.session_timeout_minutes,
        }


@dataclass
class CreatedLink:
    """Result of link creation: the link plus its one-time redeemable token."""

    link: Link
    token: str = field(repr=False)
    url: str = ""

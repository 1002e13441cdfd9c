"""Request bodies for the HTTP surface."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

_POLICY_FIELDS = (
    "expires_in_hours",
    "max_sessions",
    "max_messages_per_session",
    "rate_limit_per_minute",
    "session_timeout_minutes",
    "allowed_domains",
)
_PAYLOAD_FIELDS = ("chat_intent", "system_prompt_override", "initial_agent_message", "send_initial_message")


class CreateLinkRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    target_conversation_id: str | None = None
    agent_id: str | None = None

    # Policy
    expires_in_hours: float | None = None
    max_sessions: int | None = None
    max_messages_per_session: int | None = None
    rate_limit_per_minute: int | None = None
    session_timeout_minutes: int | None = None
    allowed_domains: list[str] | None = None

    # Behavioral payload
    chat_intent: str | None = None
    system_prompt_override: str | None = None
    initial_agent_message: str | None = None
    send_initial_message: bool = False

    def policy(self) -> dict[str, Any]:
        # Unset fields fall back to the configured defaults
        return {k: getattr(self, k) for k in _POLICY_FIELDS if getattr(self, k) is not None}

    def payload(self) -> dict[str, Any]:
        return {k: getattr(self, k) for k in _PAYLOAD_FIELDS}


class CreateConversationRequest(BaseModel):
    conversation_id: str | None = Field(default=None, max_length=128)


class OwnerMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=32_000)


# Token fields are untyped so any malformed token fails in the vault with the
# same error as a revoked or expired one
class LinkTokenRequest(BaseModel):
    token: Any = None


class RedeemRequest(BaseModel):
    token: Any = None
    participant_identifier: str | None = None
    participant_name: str | None = None


class SessionTokenRequest(BaseModel):
    session_token: Any = None


class EndSessionRequest(BaseModel):
    session_token: Any = None
    end_reason: Any = "user_ended"
    satisfaction_rating: Any = None
    feedback_text: Any = None


class PostMessageRequest(BaseModel):
    session_token: Any = None
    message: Any = None
    attachments: list[Any] | None = None


class RuleRequest(BaseModel):
    name: str
    priority: int = 100
    provider: str | None = None
    conditions: Any = None
    actions: dict[str, Any] | None = None
    is_active: bool = True

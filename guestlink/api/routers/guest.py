"""Guest routes: public, authenticated only by link and session tokens.

Every failure is rendered by the app-level ``GuestLinkError`` handler with
a generic message, so callers cannot tell a malformed token from a revoked
or expired one.
"""

# slowapi wraps redeem(); annotations here must stay real objects for FastAPI

from urllib.parse import urlsplit

from fastapi import APIRouter, Request

from guestlink.api.schemas import (
    EndSessionRequest,
    LinkTokenRequest,
    PostMessageRequest,
    RedeemRequest,
    SessionTokenRequest,
)
from guestlink.config import settings
from guestlink.security.middleware import limiter
from guestlink.sessions.models import ParticipantMeta

router = APIRouter(prefix="/chat", tags=["guest"])


def _origin_host(request: Request) -> str | None:
    """Host the browser says the request came from (Origin, else Referer)."""
    for header in ("origin", "referer"):
        value = request.headers.get(header)
        if value:
            host = urlsplit(value).hostname
            if host:
                return host
    return None


@router.post("/validate")
def validate_link(body: LinkTokenRequest, request: Request):
    """Preview a link before redeeming it."""
    return {"valid": True, "link": request.app.state.engine.registry.validate_link_token(body.token)}


@router.post("/sessions", status_code=201)
@limiter.limit(settings.redeem_rate_limit)
def redeem(request: Request, body: RedeemRequest):
    """Redeem a link token into a guest session."""
    participant = ParticipantMeta(
        identifier=body.participant_identifier,
        name=body.participant_name,
        origin_address=request.app.state.client_ip(request),
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
    )
    result = request.app.state.engine.sessions.create_session(
        body.token,
        participant,
        origin_host=_origin_host(request),
    )
    return result.as_dict()


@router.post("/sessions/validate")
def validate_session(body: SessionTokenRequest, request: Request):
    engine = request.app.state.engine
    session = engine.sessions.validate_session(body.session_token)
    link = engine.store.get_link(session.link_id)
    return {
        "valid": True,
        "session": session.details(),
        "conversation_id": session.conversation_id,
        "max_messages": link.policy.max_messages_per_session,
        "expires_at": link.expires_at,
    }


@router.post("/sessions/end")
def end_session(body: EndSessionRequest, request: Request):
    session = request.app.state.engine.sessions.end_session(
        body.session_token,
        reason=body.end_reason,
        satisfaction_rating=body.satisfaction_rating,
        feedback_text=body.feedback_text,
    )
    return {"ended": True, "session": session.details()}


@router.post("/messages")
def post_message(body: PostMessageRequest, request: Request):
    """Post a guest message and return the assistant's reply."""
    return request.app.state.engine.chat.post_message(
        body.session_token,
        body.message,
        body.attachments,
        origin_address=request.app.state.client_ip(request),
    )

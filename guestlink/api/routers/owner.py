"""Owner routes: links, conversations, routing rules.

All routes here sit behind ``OwnerAuthMiddleware``; the owner id comes
from the verified JWT, never from the request body.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response

from guestlink.api.schemas import CreateConversationRequest, CreateLinkRequest, OwnerMessageRequest, RuleRequest
from guestlink.errors import NotFoundError, ValidationError

router = APIRouter(prefix="/api", tags=["owner"])


def _owner(request: Request) -> str:
    return request.state.owner_id


# ── Conversations ────────────────────────────────────────────────────────


@router.post("/conversations", status_code=201)
def create_conversation(body: CreateConversationRequest, request: Request):
    """Create an owner conversation that links can target."""
    store = request.app.state.engine.store
    try:
        conversation = store.create_conversation(_owner(request), body.conversation_id)
    except ValueError as e:
        raise ValidationError(str(e), field="conversation_id") from e
    return {"id": conversation.conversation_id, "owner_id": conversation.owner_id, "created_at": conversation.created_at}


@router.get("/conversations/{conversation_id}/messages")
def list_conversation_messages(conversation_id: str, request: Request):
    """Full transcript, guest and owner messages interleaved in order."""
    engine = request.app.state.engine
    conversation = engine.store.get_conversation(conversation_id)
    if conversation is None or conversation.owner_id != _owner(request):
        raise NotFoundError(f"conversation {conversation_id} not found")
    messages = [m.as_dict() for m in engine.timeline.transcript(conversation_id)]
    return {"messages": messages, "count": len(messages)}


@router.post("/conversations/{conversation_id}/messages", status_code=201)
def post_owner_message(conversation_id: str, body: OwnerMessageRequest, request: Request):
    timeline = request.app.state.engine.timeline
    message = timeline.append_owner_message(conversation_id, _owner(request), body.content)
    return message.as_dict()


# ── Links ────────────────────────────────────────────────────────────────


@router.post("/links", status_code=201)
def create_link(body: CreateLinkRequest, request: Request):
    """Create a guest chat link. The token is returned only here."""
    created = request.app.state.engine.registry.create_link(
        owner_id=_owner(request),
        title=body.title,
        target_conversation_id=body.target_conversation_id,
        policy=body.policy(),
        payload=body.payload(),
        agent_id=body.agent_id,
        description=body.description,
    )
    return {"link": created.link.public_view(), "token": created.token, "url": created.url}


@router.get("/links")
def list_links(request: Request):
    links = [link.public_view() for link in request.app.state.engine.registry.list_links(_owner(request))]
    return {"links": links, "count": len(links)}


@router.get("/links/stats")
def link_stats(request: Request):
    """Aggregate analytics across the owner's links."""
    return request.app.state.engine.registry.link_stats(_owner(request))


@router.delete("/links/{link_id}", status_code=204)
def revoke_link(link_id: str, request: Request):
    request.app.state.engine.registry.revoke_link(_owner(request), link_id)
    return Response(status_code=204)


@router.get("/links/{link_id}/sessions")
def link_sessions(link_id: str, request: Request, limit: int = 50):
    sessions = request.app.state.engine.registry.link_sessions(_owner(request), link_id, limit)
    return {"sessions": sessions, "count": len(sessions)}


@router.get("/links/{link_id}/sessions/{session_id}")
def get_link_session(link_id: str, session_id: str, request: Request):
    session = request.app.state.engine.sessions.get_session_for_owner(_owner(request), link_id, session_id)
    return {"session": session.details()}


@router.post("/links/{link_id}/sessions/{session_id}/end")
def end_link_session(link_id: str, session_id: str, request: Request):
    """End one guest session without revoking the whole link."""
    session = request.app.state.engine.sessions.end_session_for_owner(_owner(request), link_id, session_id)
    return {"ended": True, "session": session.details()}


# ── Routing rules ────────────────────────────────────────────────────────


@router.post("/rules", status_code=201)
def create_rule(body: RuleRequest, request: Request):
    rule = request.app.state.engine.rules.add_rule(body.model_dump(), owner_id=_owner(request))
    return rule.as_dict()


@router.get("/rules")
def list_rules(request: Request):
    rules = [r.as_dict() for r in request.app.state.engine.rules.list_rules(_owner(request))]
    return {"rules": rules, "count": len(rules)}


@router.delete("/rules/{rule_id}", status_code=204)
def delete_rule(rule_id: str, request: Request):
    if not request.app.state.engine.rules.remove_rule(rule_id, owner_id=_owner(request)):
        raise NotFoundError(f"rule {rule_id} not found")
    return Response(status_code=204)

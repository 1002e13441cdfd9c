"""Link registry: durable records of owner-created guest chat links.

Security contract:
- Creation requires the owner to own the target conversation
- The redeemable token is minted by the vault and returned exactly once
- ``get_link_by_token`` is the only public lookup path and raises the same
  ``InvalidLink`` for malformed, unknown, revoked and expired tokens
- Links are never hard-deleted; revocation flips ``is_active``
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from guestlink.config import Settings, settings as default_settings
from guestlink.errors import InvalidLink, NotFoundError, ValidationError
from guestlink.links.models import (
    MAX_DESCRIPTION_CHARS,
    MAX_TITLE_CHARS,
    BehavioralPayload,
    CreatedLink,
    Link,
    LinkPolicy,
)
from guestlink.logging_config import request_id_var
from guestlink.sessions.models import SessionStatus
from guestlink.storage import MemoryStore
from guestlink.vault.vault import TokenKind, TokenVault

logger = logging.getLogger(__name__)


def _pydantic_to_validation_error(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()))
    return ValidationError(f"{field}: {first.get('msg', 'invalid value')}", field=field)


def _coerce(model: type, value: Any) -> Any:
    if value is None:
        value = {}
    if isinstance(value, model):
        return value
    if not isinstance(value, dict):
        raise ValidationError(f"{model.__name__} must be an object")
    try:
        return model(**value)
    except PydanticValidationError as e:
        raise _pydantic_to_validation_error(e) from e


class LinkRegistry:
    """Creates, resolves and revokes links."""

    def __init__(self, store: MemoryStore, vault: TokenVault, config: Settings | None = None):
        self._store = store
        self._vault = vault
        self._config = config or default_settings

    # ── Owner operations ─────────────────────────────────────────────────

    def create_link(
        self,
        owner_id: str,
        title: str,
        target_conversation_id: str | None = None,
        policy: LinkPolicy | dict | None = None,
        payload: BehavioralPayload | dict | None = None,
        agent_id: str | None = None,
        description: str | None = None,
    ) -> CreatedLink:
        """Persist a new link and mint its redeemable token."""
        if not title or not title.strip():
            raise ValidationError("title is required", field="title")
        title = title.strip()
        if len(title) > MAX_TITLE_CHARS:
            raise ValidationError(f"title exceeds {MAX_TITLE_CHARS} chars", field="title")
        if description is not None and len(description) > MAX_DESCRIPTION_CHARS:
            raise ValidationError(f"description exceeds {MAX_DESCRIPTION_CHARS} chars", field="description")

        policy = _coerce(LinkPolicy, policy)
        payload = _coerce(BehavioralPayload, payload)

        if target_conversation_id is not None:
            conversation = self._store.get_conversation(target_conversation_id)
            if conversation is None or conversation.owner_id != owner_id:
                raise ValidationError(
                    f"conversation {target_conversation_id} is not owned by {owner_id}",
                    field="target_conversation_id",
                )

        hours = policy.expires_in_hours or self._config.default_link_hours
        hours = min(hours, self._config.max_link_hours)
        now = time.time()

        minted = self._vault.mint(TokenKind.LINK)
        link = Link(
            link_id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=title,
            token_handle=minted.handle,
            expires_at=now + hours * 3600,
            policy=policy,
            payload=payload,
            target_conversation_id=target_conversation_id,
            agent_id=agent_id,
            description=description.strip() if description else None,
            created_at=now,
            updated_at=now,
        )
        self._store.save_link(link)

        logger.info(
            "LINK_AUDIT action=create link_id=%s owner=%s expires_in_hours=%.2f max_sessions=%d request_id=%s",
            link.link_id,
            owner_id,
            hours,
            policy.max_sessions,
            request_id_var.get(),
        )
        url = f"{self._config.public_base_url.rstrip('/')}/chat/{minted.token}"
        return CreatedLink(link=link, token=minted.token, url=url)

    def get_owned_link(self, owner_id: str, link_id: str) -> Link:
        link = self._store.get_link(link_id)
        if link is None or link.owner_id != owner_id:
            raise NotFoundError(f"link {link_id} not found for owner {owner_id}")
        return link

    def revoke_link(self, owner_id: str, link_id: str) -> Link:
        """Deactivate a link. Idempotent for the owning owner."""
        link = self.get_owned_link(owner_id, link_id)
        if link.is_active:
            link.is_active = False
            link.updated_at = time.time()
            self._store.save_link(link)
            self._vault.revoke(link.token_handle)
            logger.info(
                "LINK_AUDIT action=revoke link_id=%s owner=%s request_id=%s",
                link_id,
                owner_id,
                request_id_var.get(),
            )
        return link

    def list_links(self, owner_id: str) -> list[Link]:
        return self._store.list_links(owner_id)

    def link_sessions(self, owner_id: str, link_id: str, limit: int = 50) -> list[dict]:
        """Session details for one of the owner's links, newest first."""
        self.get_owned_link(owner_id, link_id)
        limit = max(1, min(limit, 500))
        return [s.details() for s in self._store.list_sessions(link_id=link_id)[:limit]]

    def link_stats(self, owner_id: str) -> dict[str, Any]:
        """Aggregate analytics across every link the owner created."""
        now = time.time()
        links = self._store.list_links(owner_id)
        sessions = [s for link in links for s in self._store.list_sessions(link_id=link.link_id)]

        finished = [s for s in sessions if s.ended_at is not None]
        rated = [s.satisfaction_rating for s in sessions if s.satisfaction_rating is not None]

        return {
            "total_links": len(links),
            "active_links": sum(1 for link in links if link.is_live(now)),
            "total_sessions": len(sessions),
            "active_sessions": sum(1 for s in sessions if s.status == SessionStatus.ACTIVE),
            "total_messages": sum(s.message_count for s in sessions),
            "average_session_duration_seconds": (
                round(sum(s.duration() for s in finished) / len(finished), 3) if finished else 0.0
            ),
            "average_satisfaction": round(sum(rated) / len(rated), 2) if rated else None,
        }

    # ── Public lookup ────────────────────────────────────────────────────

    def get_link_by_token(self, token: str | None) -> Link:
        """Resolve a redeemable token to its live link, or raise ``InvalidLink``."""
        handle = self._vault.resolve(token, TokenKind.LINK)
        link = self._store.get_link_by_handle(handle) if handle else None

        if link is None:
            cause = "unresolved"
        elif not link.is_active:
            cause = "revoked"
        elif link.is_expired():
            cause = "expired"
        else:
            return link

        logger.info(
            "LINK_AUDIT action=resolve outcome=invalid cause=%s link_id=%s request_id=%s",
            cause,
            link.link_id if link else "-",
            request_id_var.get(),
        )
        raise InvalidLink(f"link token {cause}")

    def validate_link_token(self, token: str | None) -> dict[str, Any]:
        """Anonymous preview of a link before redemption."""
        return self.get_link_by_token(token).preview()

    # ── Maintenance ──────────────────────────────────────────────────────

    def sweep_expired(self) -> list[Link]:
        """Deactivate every active link past its expiry. Returns those links."""
        now = time.time()
        swept = []
        for link in self._store.list_links():
            if link.is_active and link.is_expired(now):
                link.is_active = False
                link.updated_at = now
                self._store.save_link(link)
                self._vault.revoke(link.token_handle)
                swept.append(link)
        if swept:
            logger.info("Deactivated %d expired links", len(swept))
        return swept

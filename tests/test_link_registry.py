"""Tests for the link registry.

Tests:
- Creation: ownership check, length caps, expiry default and clamp
- Token returned once; record holds only the vault handle
- Revocation: idempotent, owner-scoped
- Public lookup: one generic error for every failure cause
- Preview, listing, session details and stats
- Expiry sweep
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from freezegun import freeze_time

from guestlink.errors import InvalidLink, NotFoundError, ValidationError
from guestlink.links.models import BehavioralPayload, LinkPolicy

from tests.conftest import OTHER_OWNER_ID, OWNER_ID

NOW = "2026-03-01 12:00:00"


# ── Creation ─────────────────────────────────────────────────────────────


class TestCreateLink:
    """CreateLink validation and defaults."""

    def test_create_returns_token_and_url(self, make_link):
        created = make_link()
        assert created.token.startswith("gll_")
        assert created.url == f"https://chat.example.com/chat/{created.token}"
        assert created.link.is_active
        assert created.link.session_count == 0

    def test_record_holds_handle_not_token(self, make_link):
        created = make_link()
        assert created.link.token_handle
        assert created.token not in repr(created.link)
        assert created.token not in str(created.link.public_view())
        assert "token_handle" not in created.link.public_view()

    def test_conversation_must_belong_to_owner(self, registry, store):
        foreign = store.create_conversation(OTHER_OWNER_ID)
        with pytest.raises(ValidationError) as exc:
            registry.create_link(OWNER_ID, "Chat", target_conversation_id=foreign.conversation_id)
        assert exc.value.field == "target_conversation_id"

    def test_unknown_conversation_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.create_link(OWNER_ID, "Chat", target_conversation_id="missing")

    def test_title_required(self, registry):
        with pytest.raises(ValidationError):
            registry.create_link(OWNER_ID, "   ")

    def test_title_length_cap(self, registry):
        with pytest.raises(ValidationError):
            registry.create_link(OWNER_ID, "t" * 201)

    @pytest.mark.parametrize(
        "field,limit",
        [("chat_intent", 2000), ("system_prompt_override", 4000), ("initial_agent_message", 2000)],
    )
    def test_payload_length_caps(self, make_link, field, limit):
        make_link(**{field: "x" * limit})
        with pytest.raises(ValidationError):
            make_link(**{field: "x" * (limit + 1)})

    def test_max_sessions_must_be_positive(self, make_link):
        with pytest.raises(ValidationError):
            make_link(max_sessions=0)

    def test_non_positive_duration_rejected(self, make_link):
        with pytest.raises(ValidationError):
            make_link(expires_in_hours=0)
        with pytest.raises(ValidationError):
            make_link(expires_in_hours=-2)

    def test_too_many_allowed_domains(self, make_link):
        with pytest.raises(ValidationError):
            make_link(allowed_domains=[f"d{i}.example.com" for i in range(21)])

    def test_allowed_domains_normalized(self, make_link):
        link = make_link(allowed_domains=[" Shop.Example.COM ", ".partner.io"]).link
        assert link.policy.allowed_domains == ["shop.example.com", "partner.io"]

    def test_defaults_from_settings(self, make_link, config):
        link = make_link().link
        assert link.policy.max_sessions == config.default_max_sessions
        assert link.policy.max_messages_per_session == config.default_max_messages_per_session
        assert link.policy.rate_limit_per_minute == config.default_rate_limit_per_minute

    def test_link_without_target_conversation(self, make_link):
        link = make_link(target=None).link
        assert link.target_conversation_id is None

    def test_accepts_model_instances(self, registry, owner_conversation):
        created = registry.create_link(
            OWNER_ID,
            "Chat",
            target_conversation_id=owner_conversation.conversation_id,
            policy=LinkPolicy(max_sessions=4),
            payload=BehavioralPayload(chat_intent="Collect feedback"),
        )
        assert created.link.policy.max_sessions == 4
        assert created.link.payload.chat_intent == "Collect feedback"


class TestExpiry:
    """Expiry computation."""

    @freeze_time(NOW)
    def test_default_one_hour(self, make_link):
        import time

        link = make_link().link
        assert link.expires_at == pytest.approx(time.time() + 3600)

    @freeze_time(NOW)
    def test_clamped_to_max(self, make_link, config):
        import time

        link = make_link(expires_in_hours=10_000).link
        assert link.expires_at == pytest.approx(time.time() + config.max_link_hours * 3600)

    def test_expiry_is_in_future_at_creation(self, make_link):
        link = make_link(expires_in_hours=0.01).link
        assert not link.is_expired()

    def test_expired_at_exact_boundary(self, make_link):
        link = make_link().link
        assert link.is_expired(link.expires_at)
        assert not link.is_expired(link.expires_at - 0.001)


# ── Revocation ───────────────────────────────────────────────────────────


class TestRevokeLink:
    def test_revoke_deactivates(self, registry, make_link):
        created = make_link()
        registry.revoke_link(OWNER_ID, created.link.link_id)
        assert not created.link.is_active

    def test_revoke_is_idempotent(self, registry, make_link):
        created = make_link()
        registry.revoke_link(OWNER_ID, created.link.link_id)
        link = registry.revoke_link(OWNER_ID, created.link.link_id)
        assert not link.is_active

    def test_revoke_by_other_owner_is_not_found(self, registry, make_link):
        created = make_link()
        with pytest.raises(NotFoundError):
            registry.revoke_link(OTHER_OWNER_ID, created.link.link_id)
        assert created.link.is_active

    def test_revoke_unknown_link(self, registry):
        with pytest.raises(NotFoundError):
            registry.revoke_link(OWNER_ID, "nope")

    def test_revoked_link_is_kept(self, registry, store, make_link):
        created = make_link()
        registry.revoke_link(OWNER_ID, created.link.link_id)
        assert store.get_link(created.link.link_id) is not None


# ── Public lookup ────────────────────────────────────────────────────────


class TestGetLinkByToken:
    """The only public lookup path."""

    def test_valid_token(self, registry, make_link):
        created = make_link()
        assert registry.get_link_by_token(created.token).link_id == created.link.link_id

    def test_failures_are_indistinguishable(self, registry, make_link):
        """Malformed, expired and revoked tokens raise the same error."""
        revoked = make_link()
        registry.revoke_link(OWNER_ID, revoked.link.link_id)

        with freeze_time(NOW) as frozen:
            expired = make_link(expires_in_hours=1)
            frozen.tick(timedelta(hours=2))

            errors = []
            for token in ("not-a-token", expired.token, revoked.token):
                with pytest.raises(InvalidLink) as exc:
                    registry.get_link_by_token(token)
                errors.append(exc.value)

        assert len({type(e) for e in errors}) == 1
        assert len({e.public_message for e in errors}) == 1
        assert len({e.status_code for e in errors}) == 1

    def test_session_token_is_not_a_link_token(self, registry, vault):
        from guestlink.vault.vault import TokenKind

        session_token = vault.mint(TokenKind.SESSION).token
        with pytest.raises(InvalidLink):
            registry.get_link_by_token(session_token)

    def test_preview(self, registry, make_link):
        created = make_link(title="Book a demo")
        preview = registry.validate_link_token(created.token)
        assert preview["title"] == "Book a demo"
        assert preview["agent_id"] == "agent-7"
        assert "system_prompt_override" not in preview
        assert "owner_id" not in preview


# ── Listing and analytics ────────────────────────────────────────────────


class TestListingAndStats:
    def test_list_links_is_owner_scoped_newest_first(self, registry, make_link, store):
        with freeze_time(NOW) as frozen:
            first = make_link(title="first")
            frozen.tick(timedelta(seconds=5))
            second = make_link(title="second")
        registry.create_link(OTHER_OWNER_ID, "theirs")

        links = registry.list_links(OWNER_ID)
        assert [l.link_id for l in links] == [second.link.link_id, first.link.link_id]

    def test_link_sessions_requires_ownership(self, registry, make_link):
        created = make_link()
        with pytest.raises(NotFoundError):
            registry.link_sessions(OTHER_OWNER_ID, created.link.link_id)

    def test_link_sessions_details(self, registry, manager, make_link, participant):
        created = make_link(max_sessions=2)
        manager.create_session(created.token, participant)
        sessions = registry.link_sessions(OWNER_ID, created.link.link_id)
        assert len(sessions) == 1
        assert sessions[0]["participant_name"] == "Dana"
        assert sessions[0]["status"] == "active"

    def test_stats(self, registry, manager, make_link, participant):
        created = make_link(max_sessions=3)
        first = manager.create_session(created.token, participant)
        manager.create_session(created.token, participant)
        manager.append_guest_message(first.session_token, "hello")
        manager.end_session(first.session_token, satisfaction_rating=4)

        stats = registry.link_stats(OWNER_ID)
        assert stats["total_links"] == 1
        assert stats["active_links"] == 1
        assert stats["total_sessions"] == 2
        assert stats["active_sessions"] == 1
        assert stats["total_messages"] == 1
        assert stats["average_satisfaction"] == 4

    def test_stats_empty(self, registry):
        stats = registry.link_stats("nobody")
        assert stats["total_links"] == 0
        assert stats["average_satisfaction"] is None


class TestSweepExpired:
    def test_sweep_deactivates_only_expired(self, registry, make_link):
        with freeze_time(NOW) as frozen:
            short = make_link(expires_in_hours=1)
            long = make_link(expires_in_hours=5)
            frozen.tick(timedelta(hours=2))
            swept = registry.sweep_expired()

        assert [l.link_id for l in swept] == [short.link.link_id]
        assert not short.link.is_active
        assert long.link.is_active

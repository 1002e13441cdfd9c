"""Tests for conversation fusion: guest writes land in the owner's timeline.

Tests:
- Owner, guest and assistant messages share one strictly ordered log
- Concurrent writers from several sessions keep a total order
- The link's prompt override travels with the request only
- A failing reasoning engine leaves the guest message and an apology
"""

from __future__ import annotations

import threading

import pytest

from guestlink.errors import InternalError, NotFoundError
from guestlink.fusion.context import build_reasoning_request, intent_statement
from guestlink.fusion.service import APOLOGY_MESSAGE, GuestChatService
from guestlink.fusion.timeline import ROLE_ASSISTANT, ROLE_GUEST, ROLE_OWNER
from guestlink.sessions.models import ParticipantMeta

from tests.conftest import OTHER_OWNER_ID, OWNER_ID


@pytest.fixture
def chat(manager, timeline, reasoning) -> GuestChatService:
    return GuestChatService(manager, timeline, reasoning)


class TestTimeline:
    def test_owner_and_guest_share_conversation(self, manager, make_link, timeline, owner_conversation):
        cid = owner_conversation.conversation_id
        timeline.append_owner_message(cid, OWNER_ID, "Owner note before sharing")
        created = make_link()
        session = manager.create_session(created.token)
        manager.append_guest_message(session.session_token, "Guest question")
        timeline.append_owner_message(cid, OWNER_ID, "Owner follow-up")

        transcript = timeline.transcript(cid)
        assert [m.role for m in transcript] == [ROLE_OWNER, ROLE_GUEST, ROLE_OWNER]
        assert transcript[0].tag is None
        assert transcript[1].tag.session_id == session.session_id

    def test_owner_cannot_write_to_foreign_conversation(self, timeline, owner_conversation):
        with pytest.raises(NotFoundError):
            timeline.append_owner_message(owner_conversation.conversation_id, OTHER_OWNER_ID, "hi")

    def test_timestamps_strictly_increase_under_frozen_clock(self, timeline, owner_conversation):
        from freezegun import freeze_time

        cid = owner_conversation.conversation_id
        with freeze_time("2026-03-01 12:00:00"):
            for i in range(5):
                timeline.append(cid, ROLE_OWNER, f"m{i}")
        stamps = [m.created_at for m in timeline.transcript(cid)]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    def test_concurrent_sessions_keep_total_order(self, manager, make_link, timeline, owner_conversation):
        workers, per_worker = 4, 20
        created = make_link(max_sessions=workers, rate_limit_per_minute=1000)
        tokens = [
            manager.create_session(created.token, ParticipantMeta(origin_address=f"198.51.100.{i}")).session_token
            for i in range(workers)
        ]
        barrier = threading.Barrier(workers)
        errors: list[Exception] = []

        def write(token: str, worker: int) -> None:
            barrier.wait()
            try:
                for n in range(per_worker):
                    manager.append_guest_message(token, f"w{worker}-{n}")
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=write, args=(t, i)) for i, t in enumerate(tokens)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        transcript = timeline.transcript(owner_conversation.conversation_id)
        assert len(transcript) == workers * per_worker
        stamps = [m.created_at for m in transcript]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))
        for worker in range(workers):
            own = [m.content for m in transcript if m.content.startswith(f"w{worker}-")]
            assert own == [f"w{worker}-{n}" for n in range(per_worker)]


class TestReasoningContext:
    def test_override_and_intent_are_request_scoped(self, manager, make_link, store, owner_conversation):
        created = make_link(system_prompt_override="Answer in French.", chat_intent="Book a demo")
        result = manager.create_session(created.token)
        session = store.get_session(result.session_id)

        request = build_reasoning_request(created.link, session, "Bonjour")
        assert request.system_prompt_override == "Answer in French."
        assert request.chat_intent == "Goal for this conversation: Book a demo"
        assert request.session_context["is_guest_session"] is True
        payload = request.as_payload()
        assert payload["sessionType"] == "guest_link"
        assert payload["conversationId"] == owner_conversation.conversation_id

    def test_blank_override_is_dropped(self, manager, make_link, store):
        created = make_link(system_prompt_override="   ")
        result = manager.create_session(created.token)
        request = build_reasoning_request(created.link, store.get_session(result.session_id), "hi")
        assert request.system_prompt_override is None

    @pytest.mark.parametrize("intent", [None, "", "  "])
    def test_empty_intent(self, intent):
        assert intent_statement(intent) is None


class TestGuestChatService:
    def test_post_message_round_trip(self, chat, manager, make_link, reasoning, timeline, owner_conversation):
        created = make_link(max_messages_per_session=5, system_prompt_override="Keep it short.")
        session = manager.create_session(created.token)

        response = chat.post_message(session.session_token, "What are your hours?")
        assert response["accepted"] is True
        assert response["reply"]["content"] == "Echo: What are your hours?"
        assert response["reply"]["role"] == ROLE_ASSISTANT
        assert response["reply"]["metadata"] == {"model": "fake"}
        assert response["message_count"] == 1
        assert response["remaining_messages"] == 4

        assert reasoning.requests[0].system_prompt_override == "Keep it short."
        contents = [m.content for m in timeline.transcript(owner_conversation.conversation_id)]
        assert contents == ["What are your hours?", "Echo: What are your hours?"]
        assert all("Keep it short." not in c for c in contents)

    def test_override_changes_apply_to_next_message(self, chat, manager, make_link, reasoning):
        created = make_link(system_prompt_override="v1")
        session = manager.create_session(created.token)
        chat.post_message(session.session_token, "first")
        created.link.payload = created.link.payload.model_copy(update={"system_prompt_override": "v2"})
        chat.post_message(session.session_token, "second")
        assert [r.system_prompt_override for r in reasoning.requests] == ["v1", "v2"]

    def test_engine_failure_writes_apology(self, chat, manager, make_link, reasoning, timeline, owner_conversation):
        created = make_link()
        session = manager.create_session(created.token)
        reasoning.fail = True

        with pytest.raises(InternalError):
            chat.post_message(session.session_token, "Anyone there?")

        transcript = timeline.transcript(owner_conversation.conversation_id)
        assert [m.content for m in transcript] == ["Anyone there?", APOLOGY_MESSAGE]
        assert transcript[-1].metadata == {"error": True}
        assert manager.validate_session(session.session_token).message_count == 1

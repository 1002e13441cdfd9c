"""Shared fixtures for the guestlink test suite.

Everything is wired in-process: in-memory secret store, datastore and rate
counters, plus a fake reasoning engine that records what it was asked.
"""

from __future__ import annotations

import base64
import time

import pytest
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient

from guestlink.api.app import create_app
from guestlink.api.engine import build_engine
from guestlink.config import Settings
from guestlink.fusion.context import ReasoningRequest
from guestlink.fusion.timeline import ConversationTimeline
from guestlink.guard.rate_limit import InMemoryWindowCounter, RateGuard
from guestlink.guard.validator import PayloadLimits
from guestlink.links.registry import LinkRegistry
from guestlink.locks import KeyedLocks
from guestlink.reasoning import ReasoningFailure, ReasoningReply
from guestlink.security.auth import create_owner_token
from guestlink.security.middleware import limiter
from guestlink.sessions.manager import SessionManager
from guestlink.sessions.models import ParticipantMeta
from guestlink.storage import MemoryStore
from guestlink.vault.store import InMemorySecretStore
from guestlink.vault.vault import TokenVault

OWNER_ID = "owner-1"
OTHER_OWNER_ID = "owner-2"


class FakeReasoningEngine:
    """Records requests; replies with an echo or fails on demand."""

    def __init__(self) -> None:
        self.requests: list[ReasoningRequest] = []
        self.fail = False

    def generate(self, request: ReasoningRequest) -> ReasoningReply:
        self.requests.append(request)
        if self.fail:
            raise ReasoningFailure("engine down")
        return ReasoningReply(content=f"Echo: {request.message}", metadata={"model": "fake"})


@pytest.fixture
def config(signing_key) -> Settings:
    return Settings(
        _env_file=None,
        public_base_url="https://chat.example.com",
        owner_jwt_secret="test-owner-secret-0123456789abcdef0123456789abcdef",
        vault_encryption_key=Fernet.generate_key().decode(),
        vault_lookup_key="test-lookup-key",
        sweep_interval_seconds=0,
        webhook_public_keys={"sendgrid": public_key_pem(signing_key)},
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def vault(secret_store, config) -> TokenVault:
    return TokenVault(secret_store, config.vault_encryption_key, config.vault_lookup_key)


@pytest.fixture
def registry(store, vault, config) -> LinkRegistry:
    return LinkRegistry(store, vault, config)


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def timeline(store, locks) -> ConversationTimeline:
    return ConversationTimeline(store, locks)


@pytest.fixture
def counter() -> InMemoryWindowCounter:
    return InMemoryWindowCounter()


@pytest.fixture
def guard(counter) -> RateGuard:
    return RateGuard(counter, origin_limit_per_window=100, window_seconds=60)


@pytest.fixture
def manager(store, vault, registry, timeline, guard, locks) -> SessionManager:
    return SessionManager(store, vault, registry, timeline, guard, PayloadLimits(), locks)


@pytest.fixture
def owner_conversation(store):
    return store.create_conversation(OWNER_ID)


@pytest.fixture
def make_link(registry, owner_conversation):
    """Factory: create a link on the owner's conversation.

    Keyword overrides go to the policy or payload as appropriate.
    """
    policy_keys = {
        "expires_in_hours",
        "max_sessions",
        "max_messages_per_session",
        "rate_limit_per_minute",
        "session_timeout_minutes",
        "allowed_domains",
    }

    def _make(target=..., title="Support chat", agent_id="agent-7", **overrides):
        policy = {k: v for k, v in overrides.items() if k in policy_keys}
        payload = {k: v for k, v in overrides.items() if k not in policy_keys}
        return registry.create_link(
            owner_id=OWNER_ID,
            title=title,
            target_conversation_id=owner_conversation.conversation_id if target is ... else target,
            policy=policy,
            payload=payload,
            agent_id=agent_id,
        )

    return _make


@pytest.fixture
def participant() -> ParticipantMeta:
    return ParticipantMeta(name="Dana", origin_address="203.0.113.9", user_agent="pytest")


@pytest.fixture
def reasoning() -> FakeReasoningEngine:
    return FakeReasoningEngine()


@pytest.fixture
def engine(config, reasoning):
    return build_engine(config, reasoning=reasoning)


@pytest.fixture
def app(config, engine):
    limiter.reset()
    return create_app(config, engine=engine)


@pytest.fixture
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def owner_headers(config):
    """Factory for owner auth headers."""

    def _make(owner_id: str = OWNER_ID) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_owner_token(owner_id, config)}"}

    return _make


# ── Webhook signing ──────────────────────────────────────────────────────


def sign_webhook(private_key, body: bytes, timestamp: int | None = None) -> tuple[str, str]:
    """Return (signature_b64, timestamp) for *body* the way providers sign it."""
    timestamp = str(int(time.time()) if timestamp is None else timestamp)
    signature = private_key.sign(f"{timestamp}.".encode() + body, ec.ECDSA(hashes.SHA256()))
    return base64.b64encode(signature).decode(), timestamp


def public_key_pem(private_key) -> str:
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


@pytest.fixture(scope="session")
def signing_key():
    return ec.generate_private_key(ec.SECP256R1())

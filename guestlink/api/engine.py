"""Component wiring.

Builds every collaborator from settings once per app.  With ``redis_url``
set, vault secrets, rate counters and webhook dedup are shared through
Redis; otherwise everything is in-process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from guestlink.config import Settings, settings as default_settings
from guestlink.fusion.service import GuestChatService
from guestlink.fusion.timeline import ConversationTimeline
from guestlink.guard.rate_limit import InMemoryWindowCounter, RateGuard, RedisWindowCounter
from guestlink.guard.validator import PayloadLimits
from guestlink.links.registry import LinkRegistry
from guestlink.locks import KeyedLocks
from guestlink.reasoning import HttpReasoningEngine, ReasoningEngine
from guestlink.sessions.manager import SessionManager
from guestlink.storage import MemoryStore
from guestlink.vault.store import InMemorySecretStore, RedisSecretStore
from guestlink.vault.vault import TokenVault
from guestlink.webhooks.handlers import WebhookReceiver
from guestlink.webhooks.idempotency import InMemoryDeduplicator, RedisDeduplicator
from guestlink.webhooks.rules import RuleEngine
from guestlink.webhooks.verification import SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: Settings
    store: MemoryStore
    vault: TokenVault
    registry: LinkRegistry
    timeline: ConversationTimeline
    guard: RateGuard
    sessions: SessionManager
    chat: GuestChatService
    rules: RuleEngine
    webhooks: WebhookReceiver
    dedup: InMemoryDeduplicator | RedisDeduplicator

    def sweep(self) -> dict:
        report = self.sessions.sweep().as_dict()
        report["webhook_ids_evicted"] = self.dedup.evict_expired()
        return report


def build_engine(
    config: Settings | None = None,
    reasoning: ReasoningEngine | None = None,
    store: MemoryStore | None = None,
) -> Engine:
    config = config or default_settings
    store = store or MemoryStore()
    locks = KeyedLocks()

    if config.redis_url:
        logger.info("Using Redis for vault, rate counters and webhook dedup")
        secret_store = RedisSecretStore(
            config.redis_url,
            max_retries=config.store_retry_attempts,
            base_delay=config.store_retry_base_delay,
        )
        counter = RedisWindowCounter(config.redis_url)
        dedup = RedisDeduplicator(config.redis_url)
    else:
        secret_store = InMemorySecretStore()
        counter = InMemoryWindowCounter()
        dedup = InMemoryDeduplicator()

    vault = TokenVault(secret_store, config.vault_encryption_key, config.vault_lookup_key)
    registry = LinkRegistry(store, vault, config)
    timeline = ConversationTimeline(store, locks)
    guard = RateGuard(counter, config.origin_rate_limit_per_minute, config.rate_window_seconds)
    limits = PayloadLimits(
        max_chars=config.max_message_chars,
        allowed_attachment_types=tuple(config.allowed_attachment_types),
        max_attachments=config.max_attachments,
        max_attachment_bytes=config.max_attachment_bytes,
    )
    sessions = SessionManager(store, vault, registry, timeline, guard, limits, locks)
    chat = GuestChatService(sessions, timeline, reasoning or HttpReasoningEngine(config))
    rules = RuleEngine(store)
    webhooks = WebhookReceiver(
        SignatureVerifier(config.webhook_public_keys, config.webhook_tolerance_seconds),
        dedup,
        rules,
        guard,
        config.webhook_max_body_bytes,
    )
    return Engine(
        config=config,
        store=store,
        vault=vault,
        registry=registry,
        timeline=timeline,
        guard=guard,
        sessions=sessions,
        chat=chat,
        rules=rules,
        webhooks=webhooks,
        dedup=dedup,
    )

"""Guest link engine configuration."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the guest link engine."""

    public_base_url: str = "http://localhost:3000"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    # Only trust X-Forwarded-For when set
    trusted_proxies: str = ""
    log_level: str = "INFO"

    # Link policy
    default_link_hours: float = 1.0
    max_link_hours: float = 168.0
    default_max_sessions: int = 1
    default_max_messages_per_session: int = 100
    default_rate_limit_per_minute: int = 10
    default_session_timeout_minutes: int = 30

    # Abuse guard
    origin_rate_limit_per_minute: int = 100
    rate_window_seconds: int = 60
    redeem_rate_limit: str = "30/minute"
    max_message_chars: int = 4000
    allowed_attachment_types: list[str] = [
        "image/png",
        "image/jpeg",
        "image/gif",
        "application/pdf",
        "text/plain",
    ]
    max_attachments: int = 5
    max_attachment_bytes: int = 10 * 1024 * 1024

    # Token vault (empty -> ephemeral keys, generated at startup)
    vault_encryption_key: str = ""
    vault_lookup_key: str = ""

    # Storage (empty -> in-process stores)
    redis_url: str = ""

    # Owner authentication
    owner_jwt_secret: str = "CHANGE_ME_IN_PRODUCTION_64_CHAR_SECRET"
    owner_jwt_algorithm: str = "HS256"

    # Inbound webhooks
    webhook_public_keys: dict[str, str] = {}
    webhook_tolerance_seconds: int = 300
    webhook_max_body_bytes: int = 1024 * 1024

    # Reasoning engine
    reasoning_url: str = "http://localhost:8050/chat"
    reasoning_service_token: str = ""
    reasoning_timeout_seconds: float = 30.0

    # Resilience
    store_retry_attempts: int = 3
    store_retry_base_delay: float = 0.1

    # Background sweep (0 disables)
    sweep_interval_seconds: int = 300

    model_config = {"env_prefix": "GUESTLINK_", "env_file": ".env", "extra": "ignore"}


settings = Settings()

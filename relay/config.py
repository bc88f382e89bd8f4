"""Configuration for ticket-thread-relay."""

import json

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./relay.db"
    api_prefix: str = "/api/v1"
    debug: bool = False

    # Chat platform (bot token, thread-capable channels)
    chat_api_base_url: str = "https://discord.com/api/v10"
    chat_bot_token: str = ""
    chat_parent_channel_id: str = ""

    # Ticketing platform
    ticketing_api_base_url: str = "https://api.unthread.io/api"
    ticketing_api_key: str = ""
    ticketing_channel_id: str = ""

    http_timeout_seconds: float = 15.0

    # Queue / dispatcher
    normal_concurrency: int = 5
    priority_concurrency: int = 10
    priority_weight: int = 2
    normal_weight: int = 1
    lease_seconds: float = 60.0
    handler_timeout_seconds: float = 30.0
    dequeue_timeout_seconds: float = 5.0
    poll_interval_seconds: float = 0.25
    drain_timeout_seconds: float = 30.0

    # Downstream rate limit shared by every worker
    rate_limit_max: int = 100
    rate_limit_window_seconds: float = 60.0

    # Retry policy
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    max_attempts_normal: int = 3
    max_attempts_priority: int = 3

    # Content fingerprints
    dedup_ttl_seconds: int = 300
    dedup_content_prefix: int = 100

    # Mapping lookups on the relay hot path
    lookup_max_attempts: int = 3
    lookup_max_window_seconds: float = 10.0
    lookup_base_delay_seconds: float = 1.0
    lookup_max_delay_seconds: float = 5.0

    # Message synchronization
    fuzzy_length_ratio: float = 1.5
    recent_message_limit: int = 10
    recent_deletion_window_seconds: float = 10.0
    closed_statuses: list[str] = ["closed", "resolved"]
    customer_email_domain: str = "chat.invalid"

    # Attachments relayed with a message
    attachment_max_file_size_bytes: int = 8 * 1024 * 1024
    attachment_max_files: int = 10
    attachment_allowed_types: list[str] = ["image/png", "image/jpeg", "image/jpg", "image/gif", "image/webp"]

    dead_letter_degraded_threshold: int = 100

    model_config = {"env_prefix": "RELAY_"}

    @field_validator("closed_statuses", "attachment_allowed_types", mode="before")
    @classmethod
    def _parse_string_list(cls, value: object) -> object:
        if value in (None, ""):
            return []
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                return json.loads(stripped)
            return [part.strip() for part in stripped.split(",") if part.strip()]
        raise TypeError("expected a list, JSON array or comma-separated string")


settings = Settings()

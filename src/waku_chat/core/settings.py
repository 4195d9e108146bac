"""Client settings and configuration.

This module defines all configuration options for the waku-chat client.
Settings are loaded from environment variables with sensible defaults.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files, or by
    passing an explicit instance to ``ChatSession``.
    """

    # Identity persistence
    identity_dir: Path = Field(
        default=Path.home() / ".waku_chat",
        alias="WAKU_CHAT_IDENTITY_DIR",
    )
    identity_key_name: str = Field(
        default="waku-chat-identity",
        alias="WAKU_CHAT_IDENTITY_KEY_NAME",
    )

    # Local message history
    message_retention: int = Field(default=100, alias="WAKU_CHAT_MESSAGE_RETENTION")
    dedup_index_capacity: int | None = Field(
        default=None,
        alias="WAKU_CHAT_DEDUP_INDEX_CAPACITY",
    )

    # Pull conversation history from store nodes after subscribing
    store_messages: bool = Field(default=False, alias="WAKU_CHAT_STORE_MESSAGES")

    # Waku transport (nwaku REST API)
    transport_url: str | None = Field(default=None, alias="WAKU_CHAT_TRANSPORT_URL")
    transport_timeout_seconds: float = Field(
        default=10.0,
        alias="WAKU_CHAT_TRANSPORT_TIMEOUT_SECONDS",
    )
    transport_poll_interval_seconds: float = Field(
        default=1.0,
        alias="WAKU_CHAT_TRANSPORT_POLL_INTERVAL_SECONDS",
    )
    pubsub_topic: str = Field(
        default="/waku/2/default-waku/proto",
        alias="WAKU_CHAT_PUBSUB_TOPIC",
    )
    content_topic_prefix: str = Field(
        default="/waku/chat",
        alias="WAKU_CHAT_CONTENT_TOPIC_PREFIX",
    )

    # Same-device broadcast mirror
    auto_join_broadcast_conversations: bool = Field(
        default=True,
        alias="WAKU_CHAT_AUTO_JOIN_BROADCAST_CONVERSATIONS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        populate_by_name=True,
        extra="ignore",
    )

    @property
    def identity_path(self) -> Path:
        """Return the file holding the persisted identity.

        Returns:
            Path of the JSON identity record under ``identity_dir``
        """
        return self.identity_dir / f"{self.identity_key_name}.json"


settings = Settings()

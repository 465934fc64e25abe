"""Configuration management."""

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Synchronization core settings."""

    # Message API
    api_base_url: str = "http://localhost:3000"
    api_token: str = ""  # Bearer token for the viewer session
    request_timeout: float = 15.0

    # Pagination (server caps page size at 60)
    message_page_size: int = 30
    message_page_size_max: int = 60

    # Cache freshness, in seconds
    conversations_dedupe_interval: float = 5.0
    messages_dedupe_interval: float = 2.0

    # Inbox previews
    preview_max_length: int = 160

    # Read receipts
    read_receipt_delay: float = 0.25

    # Business id provisioning race
    business_scope_retry_attempts: int = 3
    business_scope_retry_backoff: float = 0.5

    # Row-change feed (PostgreSQL LISTEN/NOTIFY) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "threadsync"
    db_user: str = "threadsync"
    db_password: str = ""
    notify_channel: str = "row_changes"
    listener_reconnect_delay: float = 2.0

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
settings = Settings()

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Document store
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/inbox.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Twilio credentials and sender
    TWILIO_SID: str = ""
    TWILIO_AUTH: str = ""
    TWILIO_NUMBER: str = ""
    TWILIO_MEDIA_REGION: str = "us1"

    # Webhook signature validation (X-Twilio-Signature)
    TWILIO_VALIDATE_SIGNATURE: bool = False
    # Public URL Twilio calls, when the app sits behind a proxy
    PUBLIC_BASE_URL: Optional[str] = None

    # Phone normalization
    DEFAULT_COUNTRY_CODE: str = "39"
    CHANNEL_PREFIX: str = "whatsapp:"

    # Live event stream
    SSE_KEEPALIVE_SECONDS: float = 25.0
    SSE_RETRY_MS: int = 5000
    SUBSCRIBER_QUEUE_SIZE: int = 256

    # Read caps
    CONVERSATIONS_LIMIT: int = 200
    STATUS_QUERY_LIMIT: int = 500
    STATUS_LOG_LIMIT: int = 1000

    CORS_ORIGINS: list[str] = ["*"]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()

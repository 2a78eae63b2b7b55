from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Environment variables take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database
    DATABASE_URL: str

    # Logging
    LOG_LEVEL: str

    # Webhook security: app secret used for X-Hub-Signature-256,
    # and the token echoed back during the subscription handshake
    WEBHOOK_SECRET: str
    VERIFY_TOKEN: str

    # WhatsApp Cloud API credentials (read-only to the service)
    WHATSAPP_TOKEN: Optional[str] = None
    PHONE_NUMBER_ID: Optional[str] = None
    WHATSAPP_API_VERSION: str = "v23.0"
    GRAPH_API_BASE_URL: str = "https://graph.facebook.com"

    # Account that owns the credentials above; inbound messages are addressed to it
    BUSINESS_OWNER_ID: Optional[str] = None

    # Outbound calls
    SEND_TIMEOUT_SECONDS: float = 15.0
    MEDIA_FETCH_TIMEOUT_SECONDS: float = 30.0

    # Media store (Google Cloud Storage)
    MEDIA_BUCKET: Optional[str] = None
    MEDIA_URL_TTL_SECONDS: int = 3600
    MEDIA_MAX_BYTES: int = 25 * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()

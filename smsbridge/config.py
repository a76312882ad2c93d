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

    # Database Configuration - required
    DATABASE_URL: str
    STORE_TIMEOUT_SECONDS: float = 5.0

    LOG_LEVEL: str = "INFO"

    # SMS provider (Twilio) - required
    TWILIO_ACCOUNT_SID: str
    TWILIO_AUTH_TOKEN: str
    TWILIO_PHONE_NUMBER: str
    TWILIO_API_BASE: str = "https://api.twilio.com"
    SMS_TIMEOUT_SECONDS: float = 5.0

    # Public URL the provider calls; overrides scheme/host for signature checks
    PUBLIC_BASE_URL: Optional[str] = None

    # AI text-completion collaborator
    ANTHROPIC_API_KEY: str
    ANTHROPIC_API_URL: str = "https://api.anthropic.com/v1/messages"
    ANTHROPIC_MODEL: str = "claude-sonnet-4-20250514"
    AI_TIMEOUT_SECONDS: float = 30.0
    AI_MAX_TOKENS: int = 300

    # Agent participant and the SMS group conversation it lives in
    AGENT_USER_ID: str = "00000000-0000-0000-0000-000000000001"
    AGENT_NAME: str = "STEF"
    AGENT_ALIAS: str = "claude"
    AGENT_CONTEXT_MESSAGES: int = 20
    SMS_CONVERSATION_ID: str = "00000000-0000-0000-0000-000000000002"
    SMS_CONVERSATION_MODE: str = "assisted"

    # Twilio gives up on a webhook after 15 seconds
    WEBHOOK_DEADLINE_SECONDS: float = 14.0

    NOTIFICATION_PREVIEW_CHARS: int = 100


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()

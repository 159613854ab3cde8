from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Relay settings loaded from environment variables.
    Components receive an instance at construction; refresh by clearing
    the get_settings() cache and rebuilding them between runs.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Storage
    DATABASE_URL: str = "sqlite:///./tgcomment.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Bot API
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_URL: str = "https://api.telegram.org"
    REQUEST_TIMEOUT: float = 15.0
    MEDIA_REQUEST_TIMEOUT: float = 30.0
    POLL_LIMIT: int = 100
    POLL_TIMEOUT: int = 10

    # Webhook secret token (X-Telegram-Bot-Api-Secret-Token); empty disables the check
    WEBHOOK_SECRET: str = ""

    # Queue processing
    PROCESSOR_MAX_RETRIES: int = 3
    NOTIFIER_MAX_RETRIES: int = 3
    BATCH_SIZE: int = 10
    PROCESSOR_LOCK_TTL: int = 120
    NOTIFIER_LOCK_TTL: int = 50
    UPDATES_LOCK_TTL: int = 120
    ROW_LEASE_TTL: int = 300

    # Media delivery: upload bytes instead of passing attachment URLs
    SEND_FILES_DIRECT: bool = False

    # Soft-delete retired queue rows for forensic replay
    DEBUG_MODE: bool = False

    # Only comments on records of this kind are relayed
    RECORD_TYPE: str = "consultation"

    # Offered to platform users without a linked account
    LOGIN_URL: str = ""


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()


# Global settings instance
settings = get_settings()

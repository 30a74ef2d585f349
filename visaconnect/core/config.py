from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # MongoDB
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "visaconnect"

    # Realtime bus; push fan-out is disabled when unset
    REDIS_URL: Optional[str] = None

    # Identity verification
    AUTH_SECRET_KEY: str = "change-me-visaconnect-development-secret"
    AUTH_ALGORITHM: str = "HS256"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Sync client
    CHAT_API_URL: str = "http://localhost:8000"
    CHAT_PUSH_URL: Optional[str] = None
    MESSAGE_POLL_INTERVAL: float = 2.0
    CONVERSATION_POLL_INTERVAL: float = 5.0


@lru_cache
def get_settings() -> Settings:
    return Settings()

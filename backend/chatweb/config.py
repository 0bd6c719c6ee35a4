"""
Configuration settings for the chatweb backend.
Uses pydantic-settings for environment variable support.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional
import secrets
import os


def get_or_create_secret_key():
    """Get secret key from file or generate a new one."""
    secret_file = ".secret_key"
    if os.path.exists(secret_file):
        try:
            with open(secret_file, "r") as f:
                return f.read().strip()
        except OSError:
            pass

    key = secrets.token_urlsafe(32)
    try:
        with open(secret_file, "w") as f:
            f.write(key)
    except OSError:
        pass  # read-only fs, key lives for this process only

    return key


class Settings(BaseSettings):
    """Application configuration settings."""

    # Application
    APP_NAME: str = "chatweb"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    # resolved relative to this config file (backend/chatweb/config.py -> backend/chatweb.db)
    _BASE_DIR: str = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    DATABASE_URL: str = f"sqlite+aiosqlite:///{os.path.join(_BASE_DIR, 'chatweb.db')}"

    # JWT Authentication
    SECRET_KEY: str = Field(default_factory=get_or_create_secret_key)
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 24 hours
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Upstream defaults, overridable per key and by the admin site config
    OPENAI_API_KEY: str = ""
    OPENAI_API_BASE_URL: str = "https://api.openai.com/v1"
    HTTPS_PROXY: Optional[str] = None
    TIMEOUT_MS: int = 600 * 1000
    DEFAULT_CHAT_MODELS: str = "gpt-4.1,gpt-4.1-mini,gpt-4.1-nano"
    DEFAULT_SYSTEM_MESSAGE: str = (
        "You are a large language model. Follow the user's instructions carefully. "
        "Respond using markdown (latex start with $)."
    )
    DEFAULT_TEMPERATURE: float = 0.8
    DEFAULT_TOP_P: float = 1.0
    DEFAULT_MAX_CONTEXT_COUNT: int = 10

    # Web search (Tavily)
    SEARCH_ENABLED: bool = False
    SEARCH_API_KEY: str = ""
    SEARCH_API_BASE: str = "https://api.tavily.com"
    SEARCH_MAX_RESULTS: int = 10
    SEARCH_TIMEOUT_SECONDS: int = 30

    # Key leasing and caches (seconds)
    KEY_LOCK_TTL_SECONDS: float = 20
    KEY_WAIT_TIMEOUT_SECONDS: float = 3
    KEY_WAIT_INTERVAL_SECONDS: float = 1
    CONFIG_CACHE_TTL_SECONDS: float = 10 * 60

    # File Upload
    UPLOAD_DIR: str = os.path.join(_BASE_DIR, "uploads")
    UPLOAD_PUBLIC_BASE_URL: Optional[str] = None
    MAX_UPLOAD_SIZE: int = 20 * 1024 * 1024  # 20MB
    ALLOWED_IMAGE_TYPES: list = ["image/jpeg", "image/png", "image/gif", "image/webp"]

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3002

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()

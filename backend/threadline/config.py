"""
Configuration settings for the Threadline backend.
Uses pydantic-settings for environment variable support.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Dict, List, Optional
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
        pass  # read-only fs, the key just won't survive a restart

    return key


class Settings(BaseSettings):
    """Application configuration settings."""

    # Application
    APP_NAME: str = "Threadline"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    # resolved relative to this file (backend/threadline/config.py -> backend/threadline.db)
    _BASE_DIR: str = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    DATABASE_URL: str = f"sqlite+aiosqlite:///{os.path.join(_BASE_DIR, 'threadline.db')}"

    # Bearer tokens
    SECRET_KEY: str = Field(default_factory=get_or_create_secret_key)
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # Model provider (OpenAI-compatible endpoint)
    DEFAULT_API_BASE: str = "https://api.openai.com/v1"
    DEFAULT_API_KEY: Optional[str] = None
    DEFAULT_MODEL_ID: str = "gpt-4o-mini"
    THINKING_MODELS: List[str] = [
        "deepseek-r1-distill-llama-70b",
        "qwen/qwen3-32b",
        "o3-mini",
    ]
    DEFAULT_TEMPERATURE: float = 0.7
    DEFAULT_MAX_TOKENS: int = 4096
    MAX_TOOL_STEPS: int = 3

    # Input limit, in characters of the user message
    MAX_INPUT_CHARS: int = 32000

    # Quota
    ANONYMOUS_DAILY_LIMIT: int = 10
    PLAN_MONTHLY_LIMITS: Dict[str, Optional[int]] = {
        "free": 25,
        "pro": 1500,
        "unlimited": None,
    }
    QUOTA_FAIL_OPEN: bool = True

    # Persistence
    PERSIST_RETRY_BACKOFF: float = 0.5

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()

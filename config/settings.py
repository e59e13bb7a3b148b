"""
Configuration settings for the application
"""
import logging
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Minimum quiet period between autosave writes
MIN_AUTOSAVE_DEBOUNCE_MS = 500

# Maximum length of any persisted free-text answer
MAX_TEXT_LENGTH = 1000

# Minimum sanitized length of required free-text feedback
MIN_FEEDBACK_LENGTH = 25


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Infrastructure configuration
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")

    # Caller identity tokens are issued by the external identity provider
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")

    # Requests without a caller identity skip ownership checks. Never on in production.
    allow_anonymous_demo: bool = Field(default=False, alias="ALLOW_ANONYMOUS_DEMO")

    # Cancellation flow tuning
    autosave_debounce_ms: int = Field(default=MIN_AUTOSAVE_DEBOUNCE_MS, alias="AUTOSAVE_DEBOUNCE_MS")
    downsell_discount_cents: int = Field(default=1000, alias="DOWNSELL_DISCOUNT_CENTS")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:3000", alias="FRONTEND_URL")

    # Logging
    log_dir: str = Field(default="./logs", alias="LOG_DIR")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    @field_validator("autosave_debounce_ms")
    @classmethod
    def _clamp_debounce(cls, value: int) -> int:
        return max(value, MIN_AUTOSAVE_DEBOUNCE_MS)

    @field_validator("downsell_discount_cents")
    @classmethod
    def _non_negative_discount(cls, value: int) -> int:
        if value < 0:
            raise ValueError("DOWNSELL_DISCOUNT_CENTS must be >= 0")
        return value

    @property
    def log_path(self) -> Path:
        return Path(self.log_dir)


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or bool(settings.env and settings.env.lower() == "production")

if IS_PRODUCTION and settings.allow_anonymous_demo:
    logger.warning("ALLOW_ANONYMOUS_DEMO is set in production; anonymous demo mode stays disabled.")
    settings.allow_anonymous_demo = False

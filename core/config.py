"""
Configuration settings for the Survey Relay service.

Uses Pydantic Settings for environment variable management.
"""

import os
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Environment
    ENV: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")

    # Logging Control
    ENABLE_FILE_LOGGING: bool = Field(default=False)
    LOGS_DIR: str = Field(default="logs")

    # Application
    APP_NAME: str = Field(default="Survey Relay")
    VERSION: str = Field(default="1.0.0")

    # "clinic" owns the local database and runs the sync coordinator,
    # "public" only talks to the relay.
    DEPLOYMENT_PROFILE: str = Field(default="clinic")

    # Server
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    origins: List[str] = [
        "http://localhost:1420",  # desktop shell
        "http://localhost:5173",
    ]

    # Local durable store
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./clinic_survey.db")
    DATABASE_ECHO: bool = Field(default=False)

    # Relay store / realtime channel
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    RELAY_KEY_PREFIX: str = Field(default="survey_relay")
    RELAY_SNAPSHOT_GRACE_HOURS: int = Field(default=24)
    CLINIC_OWNER_ID: str = Field(default="local-clinic")
    ALLOW_REMOTE_RESPONDENTS: bool = Field(default=True)

    # Sessions
    SESSION_TTL_HOURS: int = Field(default=24)
    TOKEN_MAX_ATTEMPTS: int = Field(default=5)
    PUBLIC_BASE_URL: str = Field(default="http://localhost:5173")

    # Sync coordinator
    SYNC_RESWEEP_SECONDS: int = Field(default=300)  # 0 disables the periodic resweep
    SUBSCRIPTION_POLL_SECONDS: float = Field(default=1.0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def is_clinic(self) -> bool:
        return self.DEPLOYMENT_PROFILE == "clinic"

    def validate_config(self) -> None:
        """Validate critical configuration values."""
        if self.DEPLOYMENT_PROFILE not in ("clinic", "public"):
            raise ValueError("DEPLOYMENT_PROFILE must be 'clinic' or 'public'")

        if self.SESSION_TTL_HOURS < 0:
            raise ValueError("SESSION_TTL_HOURS must not be negative")

        if self.TOKEN_MAX_ATTEMPTS <= 0:
            raise ValueError("TOKEN_MAX_ATTEMPTS must be positive")


def get_env_file() -> str:
    """Get the appropriate environment file based on ENV setting."""
    env_file = f".env.{os.getenv('ENV', 'development')}"
    if os.path.exists(env_file):
        return env_file
    return ".env"


settings = Settings(_env_file=get_env_file())
settings.validate_config()

"""Configuration loaded from environment variables."""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class Settings(BaseSettings):
    """Runtime settings for the reconciliation client.

    Tenant identity and the backend token are injected here rather than read
    from module globals, so one process can serve several tenants by building
    several ``Settings`` instances.
    """

    # Backend
    api_base_url: str = Field(default="http://localhost:8080/api", description="Portal REST API base URL")
    api_token: Optional[str] = Field(default=None, description="Bearer token for the portal API")
    tenant_id: Optional[int] = Field(default=None, description="Tenant on whose behalf payments are made")
    request_timeout: float = Field(default=15.0, description="HTTP timeout in seconds")

    # Timers
    poll_interval_seconds: float = Field(default=5.0, description="Gateway status check interval")
    countdown_seconds: int = Field(default=300, description="Redirect session budget")
    countdown_tick_seconds: float = Field(default=1.0, description="Countdown tick interval")
    window_watch_interval_seconds: float = Field(default=1.0, description="Popup closed-state poll interval")

    # Error handling
    network_failure_threshold: int = Field(
        default=3, description="Consecutive failed checks before a warning notice"
    )

    # Sessions
    session_retention_seconds: float = Field(
        default=900.0, ge=0, description="How long finished sessions stay readable through the API"
    )

    # Manual proofs
    max_proof_size_bytes: int = Field(default=5 * MIB, description="Maximum proof artifact size")

    # Gateway webhook verification
    gateway_server_key: Optional[str] = Field(default=None, description="Gateway server key for signatures")

    # Persistence
    database_url: str = Field(default="sqlite+aiosqlite:///./tenant_payments.db")

    log_level: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_prefix="TENANT_PAYMENTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("poll_interval_seconds", "countdown_tick_seconds", "window_watch_interval_seconds")
    @classmethod
    def validate_positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Intervals must be positive")
        return v

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

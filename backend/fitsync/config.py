"""
Application Configuration

Uses Pydantic Settings for type-safe configuration.
"""

from typing import Dict, Optional
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, ConfigDict


class Settings(BaseSettings):
    """Application settings with validation."""

    # === Core ===
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # === Database ===
    database_url: str = Field(
        default="sqlite:///./fitsync.db",
        description="Database connection URL"
    )

    # === Strava ===
    strava_client_id: Optional[str] = Field(default=None)
    strava_client_secret: Optional[str] = Field(
        default=None,
        validation_alias="strava_secret"  # Also accept STRAVA_SECRET
    )
    strava_api_url: str = Field(default="https://www.strava.com/api/v3")
    strava_oauth_url: str = Field(default="https://www.strava.com/oauth/token")
    strava_deauthorize_url: str = Field(default="https://www.strava.com/oauth/deauthorize")

    # === Invocation surface ===
    internal_api_key: Optional[str] = Field(
        default=None,
        description="Shared API key for scheduler / user-action invocations"
    )

    # === Token encryption ===
    token_encryption_keys: str = Field(
        default="",
        description="Versioned Fernet keys, e.g. '1:<key>,2:<key>'"
    )
    token_encryption_active_version: Optional[int] = Field(
        default=None,
        description="Key version used for new writes (defaults to highest)"
    )
    continue_token_secret: str = Field(
        default="change-me",
        description="HMAC secret for signing import continue tokens"
    )

    # === Import ===
    page_size: int = Field(default=50, ge=1, le=200)
    time_budget_seconds: float = Field(default=9.0, gt=0)
    page_time_reserve_seconds: float = Field(default=1.5, ge=0)
    max_rate_limit_retries: int = Field(default=3, ge=0)
    stale_run_seconds: int = Field(default=60, ge=1)
    orphan_grace_seconds: int = Field(default=3600, ge=0)

    # === Token lifecycle ===
    refresh_safety_margin_seconds: int = Field(default=300, ge=0)
    expiring_soon_seconds: int = Field(default=3600, ge=0)
    lock_lease_seconds: int = Field(default=30, ge=1)
    lock_wait_seconds: float = Field(default=2.0, ge=0)

    # === Provider resilience ===
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_recovery_seconds: float = Field(default=60.0, gt=0)
    circuit_breaker_error_rate: float = Field(default=0.5, gt=0, le=1)
    http_timeout_seconds: float = Field(default=5.0, gt=0)
    rate_limit_short: int = Field(default=100, description="Requests per 15 minutes")
    rate_limit_daily: int = Field(default=1000, description="Requests per day")

    @field_validator('database_url')
    @classmethod
    def fix_postgres_url(cls, v: str) -> str:
        """Fix Render/Railway postgres:// URL to postgresql://"""
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @property
    def encryption_keys(self) -> Dict[int, str]:
        """Parse versioned keys from the '1:key,2:key' string."""
        keys = {}
        for item in self.token_encryption_keys.split(','):
            item = item.strip()
            if not item:
                continue
            version, _, key = item.partition(':')
            keys[int(version)] = key.strip()
        return keys

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()

"""Application settings using Pydantic."""
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PolicyOverride(BaseModel):
    """Rate policy override for one endpoint class."""

    capacity: int
    refill_tokens: Optional[int] = None  # Defaults to capacity
    refill_interval_seconds: int = 60


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///account_guard.db",
        description="SQLAlchemy database URL",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Root log level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_file: Optional[str] = Field(
        default=None,
        description="Optional path for the rotating log file",
    )

    # Rate limiting
    rate_limit_enabled: bool = Field(
        default=True,
        description="Turn admission control on or off",
    )
    rate_limit_policies: dict[str, PolicyOverride] = Field(
        default_factory=dict,
        description="Per endpoint class overrides, e.g. "
        '{"login": {"capacity": 5, "refill_interval_seconds": 60}}',
    )
    bucket_idle_threshold_seconds: int = Field(
        default=3600,
        description="Evict buckets not touched for this long (seconds)",
    )
    bucket_sweep_interval_minutes: int = Field(
        default=30,
        description="How often to sweep idle buckets (minutes)",
    )

    # Client identity
    trust_forwarded_for: bool = Field(
        default=False,
        description="Use X-Forwarded-For to identify clients",
    )
    trusted_proxies: list[str] = Field(
        default_factory=list,
        description="Proxy IPs/CIDRs allowed to set X-Forwarded-For (empty = any)",
    )

    # Security tokens
    verification_token_ttl_hours: int = Field(
        default=24,
        description="Lifetime of email verification tokens (hours)",
    )
    reset_token_ttl_hours: int = Field(
        default=24,
        description="Lifetime of password reset tokens (hours)",
    )
    token_purge_hour: int = Field(
        default=2,
        description="Hour of day the expired token purge runs",
    )

    # Paths
    config_dir: Path = Field(
        default=Path(__file__).parent,
        description="Configuration directory",
    )

    @property
    def project_root(self) -> Path:
        """Project root directory."""
        return self.config_dir.parent


# Global settings instance
settings = Settings()

"""
Centralized configuration for Threatline.

Uses pydantic-settings for environment variable management.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API Server Configuration
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Engine Configuration
    engine_config_path: str | None = None  # YAML file, hot-reloadable
    engine_db_path: str = "data/threatline.db"
    ingest_queue_size: int = 10_000
    detection_workers: int = 4

    # ==========================================================================
    # Intelligence Providers
    # ==========================================================================

    # AlienVault OTX API key (obtain from https://otx.alienvault.com)
    otx_api_key: str | None = None
    otx_api_base_url: str = "https://otx.alienvault.com/api/v1"
    intel_timeout_seconds: float = 2.0
    # YAML allowlist / reputation / asset-criticality table
    intel_file: str | None = None

    # ==========================================================================
    # Notification Sinks
    # ==========================================================================

    webhook_url: str | None = None
    webhook_timeout_seconds: float = 5.0

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None
    alert_email_to: str | None = None

    # Logging
    log_level: str = "INFO"

    # Export
    export_dir: str = "export"

    # ==========================================================================
    # Computed Properties
    # ==========================================================================

    @property
    def has_otx_key(self) -> bool:
        """Check if AlienVault OTX API key is configured."""
        return bool(self.otx_api_key)

    @property
    def has_webhook(self) -> bool:
        """Check if a webhook notification target is configured."""
        return bool(self.webhook_url)

    @property
    def has_smtp_credentials(self) -> bool:
        """Check if SMTP credentials and a recipient are configured."""
        return bool(self.smtp_user and self.smtp_password and self.alert_email_to)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()

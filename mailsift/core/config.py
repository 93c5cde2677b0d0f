"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
Components receive the values they need through their constructors.
"""
import logging
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field("sqlite:///./mailsift.db", description="SQLAlchemy connection URL")
    database_pool_size: int = Field(5, description="Database connection pool size")
    database_echo: bool = Field(False, description="Echo SQL statements (debugging)")

    # ============================================================
    # Credential Vault
    # ============================================================
    db_encryption_key: Optional[str] = Field(None, description="Fernet key for account credentials")
    db_encryption_key_old: str = Field("", description="Comma-separated previous keys (decrypt only)")

    # ============================================================
    # Sync Configuration
    # ============================================================
    sync_default_limit: int = Field(30, description="Messages per account per run when no limit given")
    sync_max_limit: int = Field(50, description="Upper bound for the per-account limit")
    sync_recent_window_seconds: int = Field(30, description="Skip accounts synced within this window")
    sync_run_budget_seconds: float = Field(55.0, description="Wall-clock ceiling for a multi-account run")
    sync_account_budget_seconds: float = Field(45.0, description="Wall-clock ceiling for one account")
    sync_max_workers: int = Field(3, description="Accounts synced in parallel")
    sync_max_errors: int = Field(3, description="Errors kept in a sync result")
    sync_header_batch_size: int = Field(50, description="UIDs per IMAP header fetch")
    imap_timeout_seconds: int = Field(30, description="IMAP socket timeout")
    classify_after_sync: bool = Field(True, description="Classify newly synced mail")
    classify_after_sync_limit: int = Field(20, description="Max emails classified after a sync")

    # ============================================================
    # Backoff Policy
    # ============================================================
    retry_max_attempts: int = Field(3, description="Attempts for retryable operations")
    retry_base_delay: float = Field(1.0, description="Base delay in seconds")
    retry_max_delay: float = Field(30.0, description="Delay ceiling in seconds")
    retry_jitter: float = Field(0.25, description="Jitter fraction (0-1)")

    # ============================================================
    # OAuth2 Configuration
    # ============================================================
    google_client_id: Optional[str] = Field(None, description="Google OAuth client ID")
    google_client_secret: Optional[str] = Field(None, description="Google OAuth client secret")
    google_token_url: str = Field("https://oauth2.googleapis.com/token", description="Google token endpoint")
    gmail_api_base: str = Field("https://gmail.googleapis.com/gmail/v1", description="Gmail REST base URL")
    gmail_timeout_seconds: float = Field(20.0, description="Gmail HTTP timeout")
    microsoft_client_id: Optional[str] = Field(None, description="Azure AD application (client) ID")
    microsoft_client_secret: Optional[str] = Field(None, description="Azure AD client secret")
    microsoft_tenant_id: str = Field("common", description="Azure AD tenant")
    token_refresh_buffer_seconds: int = Field(60, description="Refresh tokens this close to expiry")

    # ============================================================
    # LLM Configuration
    # ============================================================
    openai_api_key: Optional[str] = Field(None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(None, description="OpenAI-compatible endpoint")
    openai_model: str = Field("gpt-4o-mini", description="Model for classification")
    openai_temperature: float = Field(0.3, description="Temperature for classification (0-1)")
    classifier_max_tokens: int = Field(1024, description="Max completion tokens")
    classifier_timeout_seconds: float = Field(20.0, description="Timeout per classifier call")
    classifier_body_chars: int = Field(5000, description="Body excerpt size sent to the model")
    classify_min_spacing_seconds: float = Field(0.3, description="Minimum gap between model calls")
    classify_batch_budget_seconds: float = Field(50.0, description="Wall-clock budget for a batch")
    classify_batch_size: int = Field(50, description="Emails per batch run")
    classify_max_errors: int = Field(5, description="Errors kept in a batch result")

    # ============================================================
    # Reputation Model
    # ============================================================
    reputation_volume_saturation: int = Field(20, description="Emails needed for full volume weight")
    reputation_volume_weight: float = Field(0.5, description="Confidence share from volume")
    reputation_override_step: float = Field(0.15, description="Confidence per user override")
    reputation_override_cap: float = Field(0.3, description="Confidence cap from overrides")
    reputation_concentration_weight: float = Field(0.2, description="Confidence share from category concentration")
    reputation_use_threshold: float = Field(0.85, description="Use reputation category at or above this confidence")
    reputation_feedback_weight: int = Field(3, description="Category score added by a user correction")
    reputation_rebuild_batch_size: int = Field(100, description="Rows per rebuild batch")
    reputation_rebuild_budget_seconds: float = Field(50.0, description="Wall-clock budget for a rebuild")
    reputation_rebuild_epsilon: float = Field(0.01, description="Minimum confidence change written by rebuild")

    # ============================================================
    # API Configuration
    # ============================================================
    api_key: Optional[str] = Field(None, description="API key for authentication (optional for dev)")
    allowed_origins: str = Field(
        "http://localhost:3000,http://localhost:8000",
        description="Comma-separated CORS allowed origins"
    )
    app_env: str = Field("development", description="development/staging/production")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse allowed origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def old_encryption_keys(self) -> List[str]:
        """Parse previous vault keys into list."""
        return [k.strip() for k in self.db_encryption_key_old.split(",") if k.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in ('production', 'prod', 'staging')


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings


def configure_logging(settings: Settings):
    """Apply log level/format and quiet chatty client libraries."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=settings.log_format,
    )
    for noisy in ("httpx", "httpcore", "openai", "imapclient"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

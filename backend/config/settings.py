"""
Application Settings and Configuration.

Loads configuration from environment variables and config files.
Covers database, workflow engine limits, and notification transports.
"""

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from .paths import default_database_url, default_log_directory


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables:
        DATABASE_URL: Database connection URL (default: sqlite)
        LOG_LEVEL: Root log level (default: INFO)
        TRADEFLOW_WORKFLOW_*: Workflow engine limits
        TRADEFLOW_SMTP_* / TRADEFLOW_TWILIO_*: Notification transports
    """

    # Database Configuration
    database_url: str = Field(
        default_factory=default_database_url,
        alias="DATABASE_URL"
    )

    # Application Configuration
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_directory: str = Field(default_factory=default_log_directory, alias="TRADEFLOW_LOG_DIRECTORY")
    log_retention_days: int = Field(default=30, ge=1, alias="TRADEFLOW_LOG_RETENTION_DAYS")
    audit_retention_days: int = Field(default=90, ge=1, alias="TRADEFLOW_AUDIT_RETENTION_DAYS")

    # API authentication (optional for local dev/test)
    api_auth_enabled: bool = Field(default=False, alias="TRADEFLOW_API_KEY_AUTH_ENABLED")
    api_auth_key: Optional[str] = Field(default=None, alias="TRADEFLOW_API_KEY")
    api_run_rate_limit: str = Field(default="60/minute", alias="TRADEFLOW_RUN_RATE_LIMIT")
    cors_origins: str = Field(default="http://localhost:3000", alias="TRADEFLOW_CORS_ORIGINS")

    # Workflow engine
    workflow_max_concurrent_runs: int = Field(default=8, alias="TRADEFLOW_WORKFLOW_MAX_CONCURRENT_RUNS")
    workflow_busy_policy: Literal["queue", "reject"] = Field(default="queue", alias="TRADEFLOW_WORKFLOW_BUSY_POLICY")
    workflow_allow_manual_run_when_paused: bool = Field(
        default=True, alias="TRADEFLOW_WORKFLOW_ALLOW_MANUAL_RUN_WHEN_PAUSED"
    )
    workflow_action_timeout_seconds: float = Field(default=10.0, alias="TRADEFLOW_WORKFLOW_ACTION_TIMEOUT_SECONDS")
    workflow_max_delay_seconds: float = Field(default=3600.0, alias="TRADEFLOW_WORKFLOW_MAX_DELAY_SECONDS")
    workflow_log_history_limit: int = Field(default=50, alias="TRADEFLOW_WORKFLOW_LOG_HISTORY_LIMIT")
    workflow_market_history_size: int = Field(default=500, alias="TRADEFLOW_WORKFLOW_MARKET_HISTORY_SIZE")

    # Paper broker used when no live broker is wired in
    paper_starting_balance: float = Field(default=100000.0, alias="TRADEFLOW_PAPER_STARTING_BALANCE")
    order_throttle_per_minute: int = Field(default=60, alias="TRADEFLOW_ORDER_THROTTLE_PER_MINUTE")

    # Notification delivery (alert/webhook/email/sms)
    notifications_enabled: bool = Field(default=True, alias="TRADEFLOW_NOTIFICATIONS_ENABLED")
    webhook_timeout_seconds: int = Field(default=10, alias="TRADEFLOW_WEBHOOK_TIMEOUT_SECONDS")

    # SMTP email delivery configuration
    smtp_host: Optional[str] = Field(default=None, alias="TRADEFLOW_SMTP_HOST")
    smtp_port: int = Field(default=587, alias="TRADEFLOW_SMTP_PORT")
    smtp_username: Optional[str] = Field(default=None, alias="TRADEFLOW_SMTP_USERNAME")
    smtp_password: Optional[str] = Field(default=None, alias="TRADEFLOW_SMTP_PASSWORD")
    smtp_from_email: Optional[str] = Field(default=None, alias="TRADEFLOW_SMTP_FROM_EMAIL")
    smtp_use_tls: bool = Field(default=True, alias="TRADEFLOW_SMTP_USE_TLS")
    smtp_use_ssl: bool = Field(default=False, alias="TRADEFLOW_SMTP_USE_SSL")
    smtp_timeout_seconds: int = Field(default=15, alias="TRADEFLOW_SMTP_TIMEOUT_SECONDS")

    # Twilio SMS delivery configuration
    twilio_account_sid: Optional[str] = Field(default=None, alias="TRADEFLOW_TWILIO_ACCOUNT_SID")
    twilio_auth_token: Optional[str] = Field(default=None, alias="TRADEFLOW_TWILIO_AUTH_TOKEN")
    twilio_from_number: Optional[str] = Field(default=None, alias="TRADEFLOW_TWILIO_FROM_NUMBER")
    twilio_timeout_seconds: int = Field(default=15, alias="TRADEFLOW_TWILIO_TIMEOUT_SECONDS")

    @field_validator("twilio_account_sid", "twilio_auth_token", "smtp_password", "api_auth_key")
    @classmethod
    def strip_secret(cls, v: Optional[str]) -> Optional[str]:
        """Strip whitespace from credentials to prevent authentication failures."""
        return v.strip() if v else v

    @field_validator("workflow_max_concurrent_runs", "workflow_log_history_limit", "workflow_market_history_size")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        return max(1, int(v))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None

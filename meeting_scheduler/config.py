"""Service settings loaded from environment."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    database_url: str = "postgresql+psycopg://readwrite:@localhost:5432/meeting_scheduler"

    messaging_gateway_url: str = "http://localhost:8000"
    calendar_gateway_url: str = "http://localhost:8010"
    gateway_timeout_seconds: int = 30

    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    generation_timeout_seconds: int = 60
    generation_max_retries: int = 2

    default_timezone: str = "America/New_York"
    default_duration_minutes: int = 30
    default_meeting_hour: int = 10
    max_proposed_times: int = 3

    follow_up_delay_hours: int = 48
    max_attempts: int = 3
    auto_send_replies: bool = False  # Send alternatives/confirmations without human preview

    sweep_interval_seconds: int = 60
    sweep_batch_size: int = 50

    webhook_signing_key: str = ""  # Optional: HMAC key shared with the email provider
    owner_phone_number: str = ""  # Receives needs-review alerts by SMS
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()

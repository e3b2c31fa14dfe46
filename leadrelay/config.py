"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is malformed.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost/leadrelay"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Vapi (voice)
    vapi_api_key: str = ""
    vapi_base_url: str = "https://api.vapi.ai"

    # Twilio (SMS)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_messaging_service_sid: str = ""

    # SendGrid (email)
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "bookings@leadrelay.io"
    sendgrid_from_name: str = "LeadRelay"

    # Global channel flags (tenants can only switch these off)
    call_enabled: bool = True
    sms_enabled: bool = True
    email_enabled: bool = True

    # Engagement policy
    max_attempts: int = 3
    backoff_minutes: list[int] = [15, 240, 1200]  # 15m, 4h, 20h
    stop_keywords: list[str] = ["STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"]
    default_phone_region: str = "GB"

    # Timing
    provider_timeout_seconds: float = 10.0
    dedup_window_seconds: int = 3600
    tenant_cache_ttl_seconds: int = 60
    lead_lock_ttl_seconds: int = 60
    lead_lock_wait_seconds: float = 20.0  # must outlast one provider round-trip
    scheduler_poll_seconds: int = 30
    scheduler_batch_size: int = 50
    call_outcome_timeout_minutes: int = 30
    workers_enabled: bool = True  # run scheduler and lead-state workers inside the API process

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()

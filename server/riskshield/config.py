import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv


@dataclass
class Settings:
    # Database
    database_url: str

    # Redis / Celery
    redis_url: str
    celery_broker_url: str
    celery_result_backend: str

    # Email (MailerSend)
    mailersend_api_key: Optional[str]
    mailersend_from_email: str
    mailersend_from_name: str

    # SMS (Twilio)
    twilio_account_sid: Optional[str]
    twilio_auth_token: Optional[str]
    twilio_phone_number: Optional[str]

    # Links in outbound messages
    app_base_url: str

    # Day boundaries for "today" / "last 24h" views
    compliance_timezone: str

    # Log outbound messages instead of sending them
    cron_test_mode: bool

    # Server
    port: int


# Global settings instance
_settings: Optional[Settings] = None


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    global _settings
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    _settings = Settings(
        database_url=database_url.strip().strip('"'),
        redis_url=redis_url,
        celery_broker_url=os.getenv("CELERY_BROKER_URL", redis_url),
        celery_result_backend=os.getenv("CELERY_RESULT_BACKEND", redis_url),
        mailersend_api_key=os.getenv("MAILERSEND_API_KEY"),
        mailersend_from_email=os.getenv("MAILERSEND_FROM_EMAIL", "compliance@riskshield.app"),
        mailersend_from_name=os.getenv("MAILERSEND_FROM_NAME", "RiskShield Compliance"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER"),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:5173").rstrip("/"),
        compliance_timezone=os.getenv("COMPLIANCE_TIMEZONE", "UTC"),
        cron_test_mode=_env_flag("CRON_TEST_MODE"),
        port=int(os.getenv("PORT", "8000")),
    )
    return _settings


def get_settings() -> Settings:
    """Get the loaded settings. Must call load_settings() first."""
    global _settings
    if _settings is None:
        raise RuntimeError("Settings not initialized. Call load_settings() first.")
    return _settings

"""RCS Auth — configuration loaded from environment."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide settings, loaded from .env or environment variables."""

    # ── Database ──────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./rcs_auth.db"

    # ── Twilio messaging ──────────────────────────────────
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    messaging_service_sid: str = ""
    twilio_api_base_url: str = "https://api.twilio.com/2010-04-01"
    validate_webhook_signature: bool = True

    # ── Identity provider (GoTrue-compatible) ─────────────
    identity_base_url: str = "http://localhost:54321"
    identity_anon_key: str = ""
    identity_service_key: str = ""

    # ── Session policy ────────────────────────────────────
    session_duration_days: int = 7
    trust_required: bool = True
    rate_limit_max_attempts: int = 3
    rate_limit_window_minutes: int = 60
    default_auth_method: str = "magic_link"
    otp_ttl_minutes: int = 10
    expired_retention_days: int = 30
    downgrade_retention_days: int = 1
    session_cache_ttl_seconds: int = 30
    sweep_interval_minutes: int = 60

    # ── Outbound delivery ─────────────────────────────────
    send_max_retries: int = 3
    send_backoff_seconds: float = 1.0

    # ── App ───────────────────────────────────────────────
    app_name: str = "RCS Auth"
    app_url: str = "http://localhost:8000"
    rcs_setup_url: str = ""
    debug: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def status_callback_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/twilio/status-callback"

    @property
    def webhook_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/twilio/webhook"


# Singleton settings instance
settings = Settings()

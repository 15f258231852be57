from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    # App
    app_name: str = "Medi Link"
    base_url: str = "http://localhost:3000"
    secret_key: str = "CHANGE_ME"
    environment: str = "dev"  # dev|prod
    allowed_hosts: str = "*"
    enforce_https: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    session_max_age_seconds: int = 60 * 60 * 24 * 30
    session_cookie_name: str = "session_token"

    # Database
    database_url: str = "postgresql+asyncpg://medilink:medilink@db:5432/medilink"

    # Payments (Stripe)
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_price_basic_month: str | None = None
    stripe_price_basic_year: str | None = None
    stripe_price_pro_month: str | None = None
    stripe_price_pro_year: str | None = None
    stripe_price_premium_month: str | None = None
    stripe_price_premium_year: str | None = None

    # Redis (rate limiting)
    redis_url: str = "redis://redis:6379/0"
    rate_limit_enabled: bool = True
    rate_limit_checkout_limit: int = 10
    rate_limit_checkout_window_seconds: int = 60

    # Optional: bootstrap admins by email (comma-separated)
    admin_emails: str | None = None


settings = Settings()

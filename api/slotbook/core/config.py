"""Application configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "SlotBook"
    debug: bool = True
    secret_key: str = "dev-secret-change-in-production"
    api_prefix: str = "/api/v1"

    # Database
    database_url: str = "postgresql+asyncpg://slotbook:slotbook@db:5432/slotbook"
    database_echo: bool = False
    database_pool_timeout_seconds: float = 5.0

    # Redis (Celery broker for refund requests)
    redis_url: str = "redis://redis:6379/0"

    # Auth (tokens are issued by the identity service and share the signing key)
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Stripe (test mode)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Booking engine
    timezone: str = "Europe/London"
    booking_timeout_seconds: float = 10.0

    model_config = {"env_prefix": "SB_", "env_file": ".env", "extra": "ignore"}


settings = Settings()

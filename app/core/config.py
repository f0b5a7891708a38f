from pydantic_settings import BaseSettings
from typing import Optional, List


def _parse_allowed_origins(v: str) -> List[str]:
    """Parse comma-separated origins string; strip whitespace; keep non-empty."""
    if not v or not v.strip():
        return []
    return [o.strip() for o in v.split(",") if o.strip()]


_DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "postgresql://postgres:postgres@db:5432/sintonia"

    # CORS: comma-separated extra origins for production
    ALLOWED_ORIGINS_EXTRA: str = ""

    def get_allowed_origins(self) -> List[str]:
        """Return CORS allowed origins: default localhost + ALLOWED_ORIGINS_EXTRA."""
        return _DEFAULT_CORS_ORIGINS + _parse_allowed_origins(self.ALLOWED_ORIGINS_EXTRA)

    # Auth
    SECRET_KEY: str = "supersecret_jwt_key_change_in_production"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None  # Webhook signing secret for signature verification

    # Payments
    PAYMENT_CURRENCY: str = "brl"
    GATEWAY_TIMEOUT_SECONDS: int = 25  # Distinct from the client's own HTTP timeout
    MIN_PLAN_PRICE_CENTS: int = 100
    MAX_PLAN_PRICE_CENTS: int = 500000
    COUPON_RESERVATION_HOURS: int = 24  # Matches Stripe Checkout session expiry

    # Frontend
    FRONTEND_URL: str = "http://localhost:3000"

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        # Environment variables win over the .env file


settings = Settings()

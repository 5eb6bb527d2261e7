"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Errand Escrow"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Paystack ─────────────────────────────────────────────
    PAYSTACK_SECRET_KEY: str = ""
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_TIMEOUT_SECONDS: float = 30.0

    # ── Twilio ───────────────────────────────────────────────
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""

    # ── Email ────────────────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@errandwork.ng"
    EMAIL_FROM_NAME: str = "ErrandWork"

    # ── CORS ─────────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── Business Config ──────────────────────────────────────
    PLATFORM_FEE_RATE: float = 0.05
    MIN_BOOKING_AMOUNT: int = 50_000           # kobo (₦500)
    MAX_BOOKING_AMOUNT: int = 100_000_000      # kobo (₦1,000,000)
    ACCEPTANCE_WINDOW_MS: int = 3_600_000      # 1 hour
    WORKER_CANCEL_MIN_HOURS: int = 24          # worker may back out only after this

    # ── SMS Delivery ─────────────────────────────────────────
    SMS_MAX_RETRIES: int = 3
    SMS_RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    SMS_MAX_LENGTH: int = 160
    SMS_BRAND: str = "ErrandWork"

    @field_validator("PLATFORM_FEE_RATE")
    @classmethod
    def fee_rate_is_fraction(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError("PLATFORM_FEE_RATE must be in [0, 1)")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()

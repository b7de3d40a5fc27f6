import os
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str          = os.getenv("DATABASE_URL", "")
    CHECKOUT_DB_USER: str      = os.getenv("CHECKOUT_DB_USER", "")
    CHECKOUT_DB_PASSWORD: str  = os.getenv("CHECKOUT_DB_PASSWORD", "")
    CHECKOUT_DB_NAME: str      = os.getenv("CHECKOUT_DB_NAME", "")
    CHECKOUT_DB_HOST: str      = os.getenv("CHECKOUT_DB_HOST", "localhost")
    CHECKOUT_DB_PORT: int      = int(os.getenv("CHECKOUT_DB_PORT", "5432"))
    DB_ECHO: bool              = False

    RABBIT_USER: str           = os.getenv("RABBIT_USER", "")
    RABBIT_PASSWORD: str       = os.getenv("RABBIT_PASSWORD", "")
    RABBIT_HOST: str           = os.getenv("RABBIT_HOST", "")
    RABBIT_PORT: int           = int(os.getenv("RABBIT_PORT",  "5672"))
    NOTIFICATIONS_EXCHANGE: str = "marketplace_notifications"
    OUTBOX_POLL_INTERVAL: int  = int(os.getenv("OUTBOX_POLL_INTERVAL", "1"))
    OUTBOX_BATCH_SIZE: int     = 100

    RAZORPAY_KEY_ID: str         = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET: str     = os.getenv("RAZORPAY_KEY_SECRET", "")
    RAZORPAY_WEBHOOK_SECRET: str = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
    RAZORPAY_API_URL: str        = "https://api.razorpay.com"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    AUTH_SERVICE_URL: str      = os.getenv("AUTH_SERVICE_URL", "http://auth-service:8000")

    # Amounts are in minor currency units (paise).
    CURRENCY: str              = "INR"
    BOOKING_FEE: int           = 50 * 100
    LEAD_UNLOCK_FEE: int       = 99 * 100
    LEAD_MAX_UNLOCKS: int      = 3

    # Slot start times are wall-clock times in this zone.
    MARKETPLACE_TIMEZONE: str  = os.getenv("MARKETPLACE_TIMEZONE", "Asia/Kolkata")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://"
            f"{self.CHECKOUT_DB_USER}:"
            f"{self.CHECKOUT_DB_PASSWORD}"
            f"@{self.CHECKOUT_DB_HOST}:"
            f"{self.CHECKOUT_DB_PORT}/"
            f"{self.CHECKOUT_DB_NAME}"
        )

    @property
    def gateway_configured(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)

settings = Settings()

import tempfile
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./dev.db"
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    APP_URL: str = "http://localhost:3000"
    FRONTEND_ORIGINS: List[str] = ["http://localhost:3000"]

    # business windows
    RESERVATION_TTL_SECONDS: int = 600
    CHECKOUT_WINDOW_SECONDS: int = 600
    CHECKOUT_TIMEOUT_SECONDS: int = 900
    PREPARING_ALERT_SECONDS: int = 48 * 60 * 60
    PAYMENT_RETRY_WINDOW_SECONDS: int = 300
    # let PREPARING start from CONFIRMED (paid) reservations, not only ACTIVE ones
    PREPARING_ACCEPTS_CONFIRMED: bool = False

    # enforcement jobs
    JOBS_ENABLED: bool = True
    RESERVATION_EXPIRY_INTERVAL_SECONDS: float = 30
    STATE_TIMEOUT_INTERVAL_SECONDS: float = 60
    CART_REMINDER_INTERVAL_SECONDS: float = 300

    # abandoned carts
    CART_ABANDONED_MIN_HOURS: int = 23
    CART_ABANDONED_MAX_HOURS: int = 25
    RECOVERY_TOKEN_TTL_DAYS: int = 7
    CART_SCAN_BATCH_SIZE: int = 100

    # sqlite write serialisation
    LOCK_DIR: str = tempfile.gettempdir()
    LOCK_TIMEOUT_SECONDS: float = 10

    EMAIL_MOCK_DELAY_MS: int = 50
    PAYMENT_MOCK_DELAY_MS: int = 100

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()

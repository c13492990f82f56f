from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./orderflow.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings (tokens are issued by the external auth service)
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # App Settings
    APP_NAME: str = "Orderflow Settlement Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
    ]

    # Payment gateway webhook
    PAYMENT_WEBHOOK_SECRET: Optional[str] = None  # HMAC-SHA256 secret, unsigned webhooks accepted when unset

    # Ledger
    CONFLICT_RETRY_LIMIT: int = 3  # Attempts per transition before ConflictError surfaces

    # Delivery auto-confirmation
    AUTO_CONFIRM_DELIVERY_DAYS: int = 14  # Days after shipment with no dispute
    AUTO_CONFIRM_INTERVAL_MINUTES: int = 60
    AUTO_CONFIRM_BATCH_SIZE: int = 100

    # Settlement
    AUTO_SETTLEMENT_ENABLED: bool = False
    AUTO_SETTLEMENT_INTERVAL_MINUTES: int = 60
    PLATFORM_COMMISSION_RATE: Decimal = Decimal("0.10")  # Used when checkout omits item commission
    DEFAULT_CURRENCY: str = "USD"

    # Input limits
    MAX_REASON_LENGTH: int = 500
    MAX_VERIFICATION_NOTES_LENGTH: int = 1000

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

import os
from functools import lru_cache

from pydantic import BaseModel


class Settings(BaseModel):
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://postbook:postbook@db:5432/postbook",
    )
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # OTP policy
    OTP_LENGTH: int = int(os.getenv("OTP_LENGTH", "6"))
    OTP_TTL_SECONDS: int = int(os.getenv("OTP_TTL_SECONDS", "300"))
    OTP_MAX_RETRIES: int = int(os.getenv("OTP_MAX_RETRIES", "3"))
    OTP_BLOCK_MINUTES: int = int(os.getenv("OTP_BLOCK_MINUTES", "15"))
    OTP_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("OTP_SWEEP_INTERVAL_SECONDS", "0"))

    # SMS gateway
    SMS_GATEWAY_URL: str | None = os.getenv("SMS_GATEWAY_URL")
    SMS_API_KEY: str | None = os.getenv("SMS_API_KEY")
    SMS_SENDER_ID: str = os.getenv("SMS_SENDER_ID", "POSTBOOK")
    SMS_TIMEOUT_SECONDS: float = float(os.getenv("SMS_TIMEOUT_SECONDS", "10"))

    # Delivery management system
    DMS_BASE_URL: str | None = os.getenv("DMS_BASE_URL")
    DMS_API_TOKEN: str | None = os.getenv("DMS_API_TOKEN")
    DMS_TIMEOUT_SECONDS: float = float(os.getenv("DMS_TIMEOUT_SECONDS", "30"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

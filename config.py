from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Marketplace API"

    # --- Database ---
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: Optional[str] = None

    # --- Auth ---
    JWT_SECRET: str = "devsecret"
    JWT_EXPIRE_DAYS: int = 7

    # --- Orders / delivery ---
    OTP_TTL_MINUTES: int = 30
    OTP_MAX_ATTEMPTS: int = 5
    LOW_STOCK_THRESHOLD: int = 10
    ORDER_NUMBER_RETRIES: int = 5

    # --- Notifications (optional) ---
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_FROM_NUMBER: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()

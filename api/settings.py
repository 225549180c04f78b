from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # API Settings
    PROJECT_NAME: str = "Merchant Mitra Ledger"
    ENVIRONMENT: str = "development"
    API_ROOT_PATH: str = ""
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Payments
    PAYMENT_TIMEOUT_SECONDS: int = 120
    SWEEP_INTERVAL_SECONDS: float = 30.0
    SWEEPER_ENABLED: bool = True
    SMS_MATCH_WINDOW_SECONDS: int = 300
    SMS_AMOUNT_TOLERANCE: str = "0.01"
    AMBIGUOUS_MATCH_POLICY: str = "manual_review"

    # Dashboard day and month boundaries, minutes east of UTC (IST)
    BUSINESS_UTC_OFFSET_MINUTES: int = 330

    # Fast2SMS
    FAST2SMS_API_KEY: Optional[str] = None
    FAST2SMS_URL: str = "https://www.fast2sms.com/dev/bulkV2"
    SMS_TIMEOUT_SECONDS: float = 10.0

    # Groq
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.3-70b-versatile"

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()

from decimal import Decimal
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./ticket_exchange.db"
    DB_ECHO: bool = False

    # Security
    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    IDENTITY_WEBHOOK_SECRET: str = "change-me-in-production"
    PROCESSOR_WEBHOOK_SECRET: str = "change-me-in-production"

    # Application
    PROJECT_NAME: str = "Ticket Exchange"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "human"
    LOG_FILE: Optional[str] = None

    # Fees
    CURRENCY: str = "USD"
    PLATFORM_FEE_RATE: Decimal = Decimal("0.05")
    PROCESSOR_FEE_RATE: Decimal = Decimal("0.029")
    PROCESSOR_FEE_FIXED_CENTS: int = 30
    MINT_FEE_CENTS: int = 0
    RESALE_FEE_RATE: Decimal = Decimal("0.05")
    VENDOR_FEE_RATE: Decimal = Decimal("0.05")
    CASH_SALE_FEE_RATE: Decimal = Decimal("0.05")

    # Deadlines
    OFFER_EXPIRY_DAYS: int = 7
    HANDSHAKE_EXPIRY_MINUTES: int = 5
    TRANSFER_TOKEN_MINUTES: int = 5
    OPEN_PAYMENT_TTL_MINUTES: int = 30
    SWEEP_INTERVAL_SECONDS: int = 60
    SWEEPER_ENABLED: bool = True

    # Referral defaults (seed values for the config row)
    REFERRAL_DISCOUNT_PERCENT: Decimal = Decimal("0.00")
    REFERRAL_REVENUE_SHARE_PERCENT: Decimal = Decimal("0.10")
    REFERRAL_BENEFIT_DAYS: int = 365

    # Account subscriptions
    SUBSCRIPTION_PRO_PRICE_CENTS: int = 999
    SUBSCRIPTION_ENTERPRISE_PRICE_CENTS: int = 2999
    SUBSCRIPTION_PERIOD_DAYS: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()

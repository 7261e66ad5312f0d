from __future__ import annotations
from decimal import Decimal
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "creative_merch"
    MONGO_TRANSACTIONS: bool = False

    # Runtime
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]
    FRONTEND_URL: str = "http://localhost:3000"

    # Auth
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_MINUTES: int = 60 * 24

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    CURRENCY: str = "gbp"

    # Pricing (major currency unit)
    SHIPPING_FLAT_FEE: Decimal = Decimal("4.99")
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("100.00")
    VAT_RATE: Decimal = Decimal("0")

    # Inventory
    LOW_STOCK_THRESHOLD: int = 10
    ADMIN_EMAIL: str = "info@customisemeuk.com"

    # Mail queue
    MAIL_COLLECTION: str = "mail"
    MAX_TEMPLATE_REPEAT: int = 50

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    ABANDONED_CART_MINUTES: int = 30
    ABANDONED_CART_FOLLOWUP_HOURS: int = 24
    ABANDONED_CART_DISCOUNT_CODE: str = "COMEBACK10"
    REVIEW_REQUEST_DELAY_DAYS: int = 7
    REVIEW_SWEEP_HOUR: int = 10

    # Public form rate limiting
    RATE_LIMIT_REQUESTS: int = 5
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


settings = Settings()

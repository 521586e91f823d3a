from decimal import Decimal
from typing import Optional, Dict

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database (PostgreSQL in production, SQLite in tests)
    DATABASE_URL: str

    # JWT (tokens are issued by the auth service, we only verify them)
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24

    # App Configuration
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Billsync Backend"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Cache / Redis (Celery broker and plan catalog cache)
    REDIS_URL: Optional[str] = None
    REDIS_PASSWORD: Optional[str] = None
    CACHE_TTL_SECONDS: int = 300

    # Razorpay
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"
    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = None
    # Total billing cycles requested when creating a gateway subscription
    RAZORPAY_MONTHLY_TOTAL_COUNT: int = 120
    RAZORPAY_YEARLY_TOTAL_COUNT: int = 10

    # Every gateway HTTP call carries this timeout; a timeout counts as failure
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    # Non-functional stub gateway, refused when ENVIRONMENT == "production"
    GATEWAY_ALLOW_STUB: bool = False

    # Regional pricing: one region has its own currency, every other region pays in DEFAULT_CURRENCY
    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_REGION: str = "GLOBAL"
    SPECIAL_REGION: str = "INDIA"
    SPECIAL_REGION_COUNTRY: str = "IN"
    SPECIAL_REGION_CURRENCY: str = "INR"
    ZERO_DECIMAL_CURRENCIES: str = "JPY,KRW,VND,CLP,ISK,UGX,XAF,XOF"

    # Nominal amounts the gateway charges to authenticate a mandate
    GATEWAY_AUTH_AMOUNTS: Dict[str, Decimal] = {
        "INR": Decimal("1.00"),
        "USD": Decimal("0.50"),
    }
    AUTH_CHARGE_TOLERANCE: Decimal = Decimal("0.05")

    # Lifecycle
    GRACE_PERIOD_DAYS: int = 7
    HALTED_GRACE_PERIOD_DAYS: int = 14
    RENEWAL_LOOKAHEAD_HOURS: int = 24
    LIFECYCLE_SWEEP_INTERVAL_SECONDS: int = 300
    TRANSACTION_AUDIT_LOOKBACK_HOURS: int = 24

    # Notification collaborator (fire-and-forget HTTP hook)
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    @field_validator("DEFAULT_CURRENCY", "SPECIAL_REGION_CURRENCY")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode='after')
    def assemble_redis_url(self) -> 'Settings':
        if self.REDIS_PASSWORD and self.REDIS_URL:
            # URL already carries credentials
            if "@" in self.REDIS_URL:
                return self

            import urllib.parse
            if "redis://" in self.REDIS_URL:
                encoded_pwd = urllib.parse.quote_plus(self.REDIS_PASSWORD)
                # redis://:PASSWORD@HOST:PORT/DB
                self.REDIS_URL = self.REDIS_URL.replace("redis://", f"redis://:{encoded_pwd}@", 1)
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "production"

    @property
    def zero_decimal_currencies(self) -> set[str]:
        raw = self.ZERO_DECIMAL_CURRENCIES or ""
        return {item.strip().upper() for item in raw.split(",") if item.strip()}

    @property
    def razorpay_configured(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

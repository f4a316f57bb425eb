# core/config.py
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ────────────────────────────────
    # 1. APP & ENVIRONMENT
    # ────────────────────────────────
    PROJECT_NAME: str = "ServicePay"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=True)
    BACKEND_URL: str = "http://127.0.0.1:8000"
    FRONTEND_URL: str = Field(
        default="http://127.0.0.1:3000",
        description="Base URL of the client site hosting /payment/{request_id}",
    )
    SUPPORT_EMAIL: str = "support@example.com"

    # ────────────────────────────────
    # 2. DATABASE
    # ────────────────────────────────
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./servicepay.db",
        description="Any SQLAlchemy async URL (sqlite+aiosqlite, postgresql+asyncpg)",
    )
    DB_ECHO: bool = False

    # ────────────────────────────────
    # 3. PAYSTACK (card / bank rail)
    # ────────────────────────────────
    PAYSTACK_SECRET_KEY: str = Field(default="")
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_WEBHOOK_SECRET: Optional[str] = Field(
        default=None,
        description="Defaults to PAYSTACK_SECRET_KEY, which is what Paystack signs with",
    )
    PAYSTACK_CALLBACK_URL: Optional[str] = None
    PAYSTACK_CHARGE_CURRENCY: str = "USD"
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_MAX_RETRIES: int = 3
    GATEWAY_BACKOFF_SECONDS: float = 1.0
    GATEWAY_VERIFY_MAX_RETRIES: int = 3
    GATEWAY_AUTO_CONFIRM: bool = False
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_COOLDOWN_SECONDS: float = 30.0
    TRANSACTIONS_CACHE_TTL_SECONDS: int = 5 * 60
    FX_CACHE_TTL_SECONDS: int = 60 * 60
    EXCHANGE_RATE_API_URL: str = "https://api.exchangerate-api.com/v4/latest"
    EXCHANGE_RATE_FALLBACK_USD_TO_NGN: Decimal = Decimal("1550")

    # ────────────────────────────────
    # 4. WEBHOOKS
    # ────────────────────────────────
    WEBHOOK_REQUIRE_SECRET: bool = Field(
        default=True,
        description="Reject every webhook when no signing secret is configured",
    )

    # ────────────────────────────────
    # 5. CRYPTO RAIL
    # ────────────────────────────────
    CRYPTO_PRICE_API_URL: str = "https://api.coingecko.com/api/v3/simple/price"
    CRYPTO_PRICE_CACHE_TTL_SECONDS: int = 2 * 60
    CRYPTO_USDT_TRC20_ADDRESS: Optional[str] = None
    CRYPTO_USDT_ERC20_ADDRESS: Optional[str] = None
    CRYPTO_USDC_ERC20_ADDRESS: Optional[str] = None
    CRYPTO_BTC_ADDRESS: Optional[str] = None
    CRYPTO_ETH_ADDRESS: Optional[str] = None
    NOWPAYMENTS_API_KEY: str = Field(default="", description="Empty disables the hosted crypto processor")
    NOWPAYMENTS_BASE_URL: str = "https://api.nowpayments.io/v1"
    NOWPAYMENTS_IPN_CALLBACK_URL: Optional[str] = Field(
        default=None,
        description="Public URL of /api/webhooks/nowpayments",
    )
    NOWPAYMENTS_IPN_SECRET: Optional[str] = None
    NOWPAYMENTS_CURRENCIES_CACHE_TTL_SECONDS: int = 10 * 60

    # ────────────────────────────────
    # 6. BANK TRANSFER
    # ────────────────────────────────
    BANK_NAME: str = ""
    BANK_ACCOUNT_NAME: str = ""
    BANK_ACCOUNT_NUMBER: str = ""

    # ────────────────────────────────
    # 7. PAYMENT POLICY
    # ────────────────────────────────
    DEFAULT_DISCOUNT_PERCENT: Decimal = Decimal("10")
    MIN_DISCOUNT_PERCENT: Decimal = Decimal("0")
    MAX_DISCOUNT_PERCENT: Decimal = Decimal("50")
    SPLIT_RATIO: Decimal = Decimal("0.5")
    PAYMENT_EXPIRY_HOURS: int = 24
    LINK_EXPIRY_HOURS: int = 1
    PAYMENT_PURGE_DAYS: Optional[int] = 7
    CLEANUP_INTERVAL_MINUTES: int = 15

    # ────────────────────────────────
    # 8. SECURITY
    # ────────────────────────────────
    ADMIN_API_KEY: str = Field(default="change-me-in-production")
    CRON_SECRET: str = Field(default="change-me-in-production")

    # ────────────────────────────────
    # 9. TASK QUEUE (Celery)
    # ────────────────────────────────
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/0")

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.PAYSTACK_WEBHOOK_SECRET or self.PAYSTACK_SECRET_KEY or None

    @property
    def crypto_addresses(self) -> dict:
        return {
            "usdt-trc20": self.CRYPTO_USDT_TRC20_ADDRESS,
            "usdt-erc20": self.CRYPTO_USDT_ERC20_ADDRESS,
            "usdc-erc20": self.CRYPTO_USDC_ERC20_ADDRESS,
            "btc": self.CRYPTO_BTC_ADDRESS,
            "eth": self.CRYPTO_ETH_ADDRESS,
        }


class PaymentPolicy(BaseModel):
    """Per-deployment knobs for quoting, expiry and cleanup."""

    model_config = ConfigDict(frozen=True)

    discount_percent: Decimal = Decimal("10")
    min_discount_percent: Decimal = Decimal("0")
    max_discount_percent: Decimal = Decimal("50")
    split_ratio: Decimal = Decimal("0.5")
    payment_expiry_hours: int = 24
    link_expiry_hours: int = 1
    purge_after_days: Optional[int] = 7

    @classmethod
    def from_settings(cls, s: "Settings") -> "PaymentPolicy":
        return cls(
            discount_percent=s.DEFAULT_DISCOUNT_PERCENT,
            min_discount_percent=s.MIN_DISCOUNT_PERCENT,
            max_discount_percent=s.MAX_DISCOUNT_PERCENT,
            split_ratio=s.SPLIT_RATIO,
            payment_expiry_hours=s.PAYMENT_EXPIRY_HOURS,
            link_expiry_hours=s.LINK_EXPIRY_HOURS,
            purge_after_days=s.PAYMENT_PURGE_DAYS,
        )


# Create singleton
settings = Settings()

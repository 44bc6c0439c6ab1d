from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ────────────────────────────────
    # 1. STRIPE
    # ────────────────────────────────
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRODUCT_ID: str = "recurring_donation"
    STRIPE_TEST_MODE: bool = True

    # ────────────────────────────────
    # 2. ADYEN
    # ────────────────────────────────
    ADYEN_API_KEY: Optional[str] = None
    ADYEN_WEBHOOK_SECRET: Optional[str] = Field(default=None, description="HMAC key, hex encoded")
    ADYEN_MERCHANT_ACCOUNT: Optional[str] = None
    ADYEN_TEST_MODE: bool = True

    # ────────────────────────────────
    # 3. PAYPAL
    # ────────────────────────────────
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_WEBHOOK_ID: Optional[str] = None
    PAYPAL_PRODUCT_ID: str = "DONATION"
    PAYPAL_TEST_MODE: bool = True
    PAYPAL_WEBHOOK_LEGACY_HMAC: bool = Field(
        default=False,
        description="Verify webhooks with an HMAC over the body instead of PayPal's verification API",
    )

    # ────────────────────────────────
    # 4. MOCK
    # ────────────────────────────────
    ENABLE_MOCK_PROCESSOR: bool = False
    MOCK_WEBHOOK_SECRET: str = "mock_webhook_secret"

    # ────────────────────────────────
    # 5. NETWORK & RETRIES
    # ────────────────────────────────
    PAYMENT_REQUEST_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    PAYMENT_RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    PAYMENT_RETRY_INITIAL_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    PAYMENT_RETRY_MAX_DELAY_SECONDS: float = Field(default=4.0, ge=0)
    PAYMENT_RETRY_MULTIPLIER: float = Field(default=2.0, ge=1)
    PAYMENT_RETRY_DEADLINE_SECONDS: float = Field(default=30.0, gt=0)

    # ────────────────────────────────
    # 6. IDEMPOTENCY & WEBHOOKS
    # ────────────────────────────────
    IDEMPOTENCY_TTL_SECONDS: int = Field(default=24 * 60 * 60, gt=0)
    IDEMPOTENCY_WAIT_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)
    WEBHOOK_WAIT_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def stripe_configured(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY)

    @property
    def adyen_configured(self) -> bool:
        return bool(self.ADYEN_API_KEY)

    @property
    def paypal_configured(self) -> bool:
        return bool(self.PAYPAL_CLIENT_ID)

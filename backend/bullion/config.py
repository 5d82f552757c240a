from pydantic_settings import BaseSettings
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    DEBUG: bool = False

    # DATABASE_URL is Postgres in production. SQLite is accepted for local
    # development and the test suite.
    DATABASE_URL: str = "sqlite:///./bullion.db"

    # Session tokens issued by the email/password login flow (HS256).
    SESSION_JWT_SECRET: str = "change-me-in-production"
    SESSION_JWT_ALGORITHM: str = "HS256"

    # Federated (wallet / Google) login tokens. FEDERATED_JWT_KEY is either the
    # PEM public key (RS256/ES256) or a shared secret (HS256).
    FEDERATED_JWT_KEY: Optional[str] = None
    FEDERATED_JWT_ALGORITHM: str = "RS256"
    FEDERATED_JWT_AUDIENCE: Optional[str] = None

    # Platform Gold supplier API
    PLATFORM_GOLD_API_URL: str = "https://api.platform.gold/public/v2"
    PLATFORM_GOLD_EMAIL: Optional[str] = None
    PLATFORM_GOLD_PASSWORD: Optional[str] = None
    PLATFORM_GOLD_TIMEOUT_SECONDS: float = 30.0
    # Upstream tokens live 24h; refresh an hour early.
    PLATFORM_GOLD_TOKEN_TTL_HOURS: int = 23
    # Only these named records are contractually correct for this integration.
    PLATFORM_GOLD_PAYMENT_METHOD_NAME: str = "Wire"
    PLATFORM_GOLD_SHIPPING_INSTRUCTION_NAME: str = "Confidential Drop Ship to Customer"
    # When True, fulfillment creates a quote instead of a real sales order.
    PLATFORM_GOLD_QUOTE_MODE: bool = False
    # Extra attempts for idempotent status calls (never used for order submission).
    PLATFORM_GOLD_STATUS_RETRIES: int = 2
    # "memory" keeps the token per process; "database" shares it across instances.
    SUPPLIER_TOKEN_CACHE: str = "memory"

    # Pricing
    MARKUP_PERCENTAGE: float = 2.0
    # Orders with a cart subtotal at or above this value require identity verification.
    KYC_THRESHOLD: float = 1500.0

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: int = 30
    CURRENCY: str = "usd"

    # Transactional email (Resend HTTP API)
    RESEND_API_KEY: Optional[str] = None
    RESEND_API_URL: str = "https://api.resend.com"
    RESEND_FROM_EMAIL: str = "Summit Bullion <onboarding@resend.dev>"
    PUBLIC_BASE_URL: str = "https://summitbullion.com"

    # Shared secret for cron-triggered internal endpoints (batch resync).
    INTERNAL_API_KEY: Optional[str] = None

    # Background order sync
    ORDER_SYNC_INTERVAL_SECONDS: int = 300
    ORDER_SYNC_BATCH_SIZE: int = 50
    ORDER_SYNC_DEBOUNCE_MINUTES: int = 5

    ALLOWED_ORIGINS: str = "http://localhost:3000"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def platform_gold_base_url(self) -> str:
        return self.PLATFORM_GOLD_API_URL.rstrip("/")

    @property
    def platform_gold_configured(self) -> bool:
        return bool(self.PLATFORM_GOLD_EMAIL and self.PLATFORM_GOLD_PASSWORD)


settings = Settings()

"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    cors_origins: str = ""
    # Base URL used to build notify/return URLs for the payment gateway.
    public_base_url: str = "http://localhost:8000"

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle_seconds: int = 1800

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # PAYMENT GATEWAY (epay-compatible)
    # ===========================================
    merchant_id: str  # Required, no default
    merchant_key: str  # Required, no default
    pay_url: str = "https://credit.linux.do/epay/pay/submit.php"
    gateway_api_url: str = "https://credit.linux.do/epay/api.php"
    gateway_pay_type: str = "epay"
    gateway_timeout: float = 10.0

    # ===========================================
    # INVENTORY & ORDERS
    # ===========================================
    reservation_ttl_seconds: int = 300  # 5 minutes
    reservation_max_attempts: int = 3
    max_order_quantity: int = 10000
    amount_epsilon: float = 0.01
    # Zero-price orders of shared products mark the delivered card used when True.
    shared_zero_price_consumes_card: bool = False
    # On refund, delivered cards of exclusive products go back to stock.
    refund_reclaim_cards: bool = True
    # Orders parked in "paid" older than this are re-fulfilled by the beat task.
    paid_retry_grace_seconds: int = 300
    pending_order_cookie: str = "ldc_pending_order"

    # ===========================================
    # ADMIN
    # ===========================================
    admin_usernames: str = ""  # comma-separated allowlist
    admin_api_key: str | None = None  # Optional, but recommended

    # ===========================================
    # ADMIN NOTIFICATIONS (Telegram)
    # ===========================================
    telegram_bot_token: str = ""  # empty = notifications disabled
    admin_telegram_chat_id: str = ""

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    request_id_header: str = "X-Request-Id"
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    # ===========================================
    # STATE MANAGEMENT
    # ===========================================
    idempotency_ttl: int = 300  # 5 minutes

    @field_validator("merchant_key")
    @classmethod
    def validate_merchant_key(cls, v: str) -> str:
        """Refuse obviously unusable signing keys."""
        if len(v) < 8:
            raise ValueError("merchant_key must be at least 8 characters")
        if v in ("changeme", "secret", "password"):
            raise ValueError("merchant_key is too weak, please change it")
        return v

    @field_validator("admin_usernames")
    @classmethod
    def normalize_admin_usernames(cls, v: str) -> str:
        return v.strip()

    @property
    def admin_usernames_list(self) -> list[str]:
        """Admin allowlist in declaration order."""
        return [name.strip() for name in self.admin_usernames.split(",") if name.strip()]

    @property
    def reservation_ttl_ms(self) -> int:
        return self.reservation_ttl_seconds * 1000

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Settings accessor; used as a FastAPI dependency and by service constructors."""
    return Settings()


settings = get_settings()

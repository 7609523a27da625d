from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Dunning Recovery Engine"
    version: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    APP_DOMAIN: str = "example.com"
    APP_DATABASE_DSN: str = "sqlite:////tmp/dunning.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Operator authentication (HS256 bearer tokens)
    OPERATOR_JWT_SECRET: str = "change-me-operator-secret"

    # Payment gateway
    PAYMENT_GATEWAY: str = "stripe"
    stripe_api_key: str = ""

    # Webhook signing for campaign webhooks without their own secret
    webhook_secret: str = "whsec_default_secret"
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # SMTP
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    SMTP_FROM_EMAIL: str = "billing@example.com"
    SMTP_FROM_NAME: str = "Billing"

    # SMS HTTP API (Twilio-compatible form post)
    SMS_API_URL: str = ""
    SMS_ACCOUNT_SID: str = ""
    SMS_AUTH_TOKEN: str = ""
    SMS_FROM_NUMBER: str = ""

    # Retry policy
    BACKOFF_CAP_DAYS: int = 30
    BACKOFF_MAX_JITTER: float = 0.2
    MAX_MANUAL_RETRY_ATTEMPTS: int = 10
    CLAIM_LEASE_SECONDS: int = 300
    DEFAULT_REFUND_PERCENTAGE: int = 50

    # Bulk retry
    BULK_RETRY_DEFAULT_BATCH_SIZE: int = 10
    BULK_RETRY_MAX_BATCH_SIZE: int = 50
    BULK_RETRY_DEFAULT_DELAY_SECONDS: float = 5.0
    BULK_RETRY_MAX_IDS: int = 1000

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"


settings = Settings()

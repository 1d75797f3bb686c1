from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Billing Sync"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"  # "development", "staging", "production"

    # Database
    DATABASE_URL: str = "sqlite:///./billing_sync.db"
    AUTO_CREATE_TABLES: bool = False  # Create tables on startup (local dev only)

    # Stripe webhooks
    STRIPE_WEBHOOK_SECRET: str = ""  # Must be set via environment variable
    STRIPE_SIGNATURE_HEADER: str = "Stripe-Signature"
    WEBHOOK_TOLERANCE_SECONDS: int = 300  # Max age of a signed timestamp, 0 disables the check
    WEBHOOK_PROCESSING_TIMEOUT_SECONDS: float = 10.0

    # Reconciliation policy
    PROVISIONAL_PERIOD_DAYS: int = 30  # Access window granted on checkout before the subscription settles
    UNKNOWN_STATUS_POLICY: str = "expired"  # "expired" (fail closed) or "active"
    PROCESSED_EVENT_RETENTION_HOURS: int = 72  # Stripe redelivers for up to 3 days
    WRITE_CONFLICT_RETRIES: int = 3

    # Rate limiting in front of the webhook endpoint
    WEBHOOK_RATE_LIMIT_MAX_REQUESTS: int = 100
    WEBHOOK_RATE_LIMIT_WINDOW_SECONDS: int = 60
    FORWARDED_ALLOW_IPS: str = "127.0.0.1"  # Comma-separated proxies trusted to set X-Forwarded-For

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1
    RELEASE: str = ""  # Git SHA or version tag reported to Sentry

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()

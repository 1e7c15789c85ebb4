from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "postgresql+asyncpg://escrowhouse:escrowhouse_dev@db:5432/escrowhouse"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Per-entity locking: "memory" (single process), "redis", or "auto"
    # (memory in development and test, redis everywhere else)
    LOCK_BACKEND: str = "auto"
    LOCK_TTL_SECONDS: int = 60
    LOCK_WAIT_SECONDS: float = 30.0

    # Escrow provider (Stripe-compatible API)
    ESCROW_PROVIDER_SECRET_KEY: str = "mock_stripe_key"
    ESCROW_PROVIDER_BASE_URL: str = "https://api.stripe.com/v1"
    ESCROW_PROVIDER_TIMEOUT_SECONDS: float = 30.0
    ESCROW_CURRENCY: str = "usd"

    # Notification service
    NOTIFICATION_WEBHOOK_URL: str = "mock://notifications"
    NOTIFICATION_API_KEY: str = "mock_notification_key"

    # Resolution rules engine
    RULES_ENGINE_URL: str = "mock://rules"

    # Mediator assignment service
    MEDIATOR_SERVICE_URL: str = "mock://mediators"
    MEDIATOR_POOL: str = "mediator-east-1,mediator-west-1"

    # Milestone verification policy
    VERIFICATION_WINDOW_HOURS: int = 72
    AUTO_APPROVAL_HOURS: int = 72
    AUTO_APPROVAL_ENABLED: bool = True
    DISPUTE_WINDOW_DAYS: int = 5

    # Dispute policy
    EVIDENCE_WINDOW_HOURS: int = 48
    MEDIATION_ESCALATION_DAYS: int = 3
    PROPOSAL_RESPONSE_HOURS: int = 48
    PROPOSAL_SILENCE_IS_ACCEPTANCE: bool = False
    MEDIATOR_ASSIGNMENT_ALERT_ATTEMPTS: int = 5

    # Retries against the provider
    FUNDING_MAX_ATTEMPTS: int = 3
    PAYOUT_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 0.5
    RETRY_MAX_DELAY_SECONDS: float = 8.0

    # Reconciliation
    RECONCILE_GRACE_MINUTES: int = 10
    RECONCILE_MAX_ATTEMPTS: int = 3

    # App
    ALLOWED_ORIGINS: str = "*"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()

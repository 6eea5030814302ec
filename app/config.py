import warnings

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    MONGODB_URI: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "carrier_negotiations"
    API_KEY: str = "changeme"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8000"
    DOCS_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"

    # Strategy advisor (Claude via the Anthropic messages API)
    ANTHROPIC_API_KEY: str = ""
    ADVISOR_MODEL: str = "claude-3-haiku-20240307"
    ADVISOR_MAX_TOKENS: int = 1000
    ADVISOR_TIMEOUT_SECONDS: float = 30.0

    # Broker notifications go out through an email automation webhook
    NOTIFIER_WEBHOOK_URL: str = ""
    NOTIFIER_SECRET: str = ""
    NOTIFIER_TIMEOUT_SECONDS: float = 10.0

    # Negotiation policy defaults, overridable per negotiation
    DEFAULT_MAX_ROUNDS: int = 5
    FLOOR_TOLERANCE_PERCENT: float = 10.0
    NEGOTIATION_TTL_HOURS: float = 24.0

    # Engine-side bound on every advisor, notifier and booking call
    ENGINE_CALL_TIMEOUT_SECONDS: float = 45.0
    # A booking attempt older than this is treated as abandoned and may be retried
    BOOKING_LEASE_SECONDS: float = 120.0
    EXPIRY_SWEEP_BATCH_SIZE: int = 500

    model_config = {"env_file": ".env"}


settings = Settings()

if settings.API_KEY == "changeme":
    warnings.warn(
        "API_KEY is set to the default value 'changeme'. "
        "Set a strong API_KEY in your .env file for production.",
        stacklevel=1,
    )

if not settings.ANTHROPIC_API_KEY or not settings.NOTIFIER_WEBHOOK_URL:
    warnings.warn(
        "ANTHROPIC_API_KEY or NOTIFIER_WEBHOOK_URL is not set. "
        "Starting negotiations will fail until both are configured.",
        stacklevel=1,
    )

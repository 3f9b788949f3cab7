from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "Group Order Automation"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api/v1"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"
    LOGGING_CONFIG_PATH: str = "logging_config.json"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./groupbuy.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_CONNECT_TIMEOUT_SECONDS: int = 10
    DB_OPERATION_TIMEOUT_SECONDS: float = 20.0

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    CELERY_TIMEZONE: str = "Asia/Jerusalem"

    # Automation scheduling
    AUTOMATION_INTERVAL_MINUTES: int = 5
    AUTOMATION_RUN_BUDGET_SECONDS: float = 240.0
    CRON_SECRET_KEY: str = ""

    # Order lifecycle
    REMINDER_1H_MINUTES: int = 60
    REMINDER_10M_MINUTES: int = 10
    CLOSURE_RECOVERY_WINDOW_HOURS: int = 24
    REMINDER_SKIP_PARTICIPANTS: bool = False
    SHOP_OPEN_MESSAGE: str = "Active group order: {title}"
    SHOP_CLOSED_MESSAGE: str = (
        "The shop is currently closed. It will reopen with the next group order."
    )

    # Notification queue
    QUEUE_BATCH_SIZE: int = 10
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_SENDING_TIMEOUT_MINUTES: int = 15

    # Message transport
    EMAIL_TRANSPORT: str = "log"
    RESEND_API_URL: str = "https://api.resend.com/emails"
    RESEND_API_KEY: str = ""
    SENDER_EMAIL: str = "noreply@example.com"
    TRANSPORT_TIMEOUT_SECONDS: float = 15.0

    # Report generator
    REPORT_GENERATOR_URL: str = ""
    REPORT_TIMEOUT_SECONDS: float = 30.0

    # Message rendering
    SITE_URL: str = "http://localhost:3000"
    DISPLAY_TIMEZONE: str = "Asia/Jerusalem"
    CURRENCY_SYMBOL: str = "₪"

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    @field_validator("AUTOMATION_INTERVAL_MINUTES", "QUEUE_MAX_ATTEMPTS")
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()

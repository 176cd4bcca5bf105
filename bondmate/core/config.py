from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DB_URL: str
    REDIS_URL: str = "redis://localhost:6379/0"

    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_COOKIE_NAME: str = "access_token"

    VAPID_PUBLIC_KEY: str | None = None
    VAPID_PRIVATE_KEY: str | None = None
    VAPID_EMAIL: str | None = None

    # Relationship rules
    RESTORATION_WINDOW_DAYS: int = 30
    REQUEST_EXPIRY_DAYS: int = 7
    MAX_REQUEST_MESSAGE_LENGTH: int = 500
    MAX_BREAKUP_REASON_LENGTH: int = 500

    # Audit log retention
    AUDIT_RETENTION_DAYS: int = 365
    AUDIT_LOW_SEVERITY_RETENTION_DAYS: int = 90

    # Push retry policy
    NOTIFY_MAX_RETRIES: int = 3
    NOTIFY_BASE_DELAY_SECONDS: float = 1.0
    NOTIFY_BACKOFF_MULTIPLIER: float = 2.0
    NOTIFY_MAX_DELAY_SECONDS: float = 10.0
    NOTIFY_MAX_RETRY_WINDOW_SECONDS: float = 60.0

    # Background sweeps
    SWEEP_ENABLED: bool = True
    SWEEP_STARTUP_DELAY_SECONDS: int = 60
    SWEEP_EXPIRE_REQUESTS_INTERVAL_MINUTES: int = 6 * 60
    SWEEP_ARCHIVE_INTERVAL_MINUTES: int = 24 * 60
    SWEEP_AUDIT_PURGE_INTERVAL_MINUTES: int = 24 * 60
    SWEEP_HEARTBEAT_INTERVAL_MINUTES: int = 5
    SWEEP_LEASE_SECONDS: int = 15 * 60

    CORS_ORIGINS: list[str] = []

    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parents[1].parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()

"""
Settings

Every service reads its configuration from the environment (or a ``.env``
file) through one pydantic-settings model. Names are case-sensitive and
match the variables documented in the deployment files.

    from utils.config import settings

    settings.EXTRACT_LIMIT      # page size for the users API
    settings.ENCRYPTION_KEY     # base64 AES-256 key, required when encrypting

Secrets (SFTP password/key, encryption key) default to None; the services
that need them check them at start-up and raise ConfigurationError.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings shared by all stages."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Users API
    USERS_API_BASE: str = Field(default="https://dummyjson.com/users")
    API_TIMEOUT: float = Field(default=30, gt=0)

    # Extraction
    EXTRACT_SCHEDULE_CRON: str = Field(default="0 3 * * *")
    EXTRACT_LIMIT: int = Field(default=100, gt=0)
    EXTRACT_STATE_KEY: str = Field(default="users")

    # Backoff used for fetches, publishes and uploads
    EXTRACT_MAX_RETRIES: int = Field(default=3, ge=1)
    EXTRACT_RETRY_INITIAL_DELAY: float = Field(default=1.0, ge=0)
    EXTRACT_RETRY_MULTIPLIER: float = Field(default=2.0, ge=1)
    EXTRACT_RETRY_MAX_DELAY: float = Field(default=30.0, ge=0)

    # Local storage
    STATE_DIR: str = Field(default="/app/data/state")
    RAW_DIR: str = Field(default="/app/data/raw_users")
    PROCESSED_DIR: str = Field(default="/app/data/processed_users")
    DLQ_DIR: str = Field(default="/app/data/dlq")
    DELIVERY_TMP_DIR: str = Field(default="/app/data/tmp")
    DEPARTMENTS_CSV: str = Field(default="/data/departments.csv")
    SQLITE_PATH: str = Field(default="/data/db/app.db")

    # Transformation
    TRANSFORM_QUEUE_SIZE: int = Field(default=256, gt=0)
    TRANSFORM_CHECKPOINT_EVERY: int = Field(default=100, gt=0)

    # Redis pub/sub
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10, gt=0)
    REDIS_CHANNEL_RAW: str = Field(default="files.raw_users")
    REDIS_CHANNEL_MANIFEST: str = Field(default="files.manifests")
    REDIS_TIMEOUT: float = Field(default=5.0, gt=0)

    # SFTP delivery
    SFTP_HOST: str = Field(default="")
    SFTP_PORT: int = Field(default=22)
    SFTP_USERNAME: str = Field(default="")
    SFTP_PASSWORD: str | None = Field(default=None)
    SFTP_KEY_PATH: str | None = Field(default=None)
    SFTP_KEY_PASSPHRASE: str | None = Field(default=None)
    SFTP_REMOTE_BASE: str = Field(default="/upload")
    SFTP_TIMEOUT: float = Field(default=15, gt=0)

    # Encryption at rest on the SFTP server
    ENCRYPTION_ENABLED: bool = Field(default=True)
    ENCRYPTION_KEY: str | None = Field(default=None)

    # HTTP trigger service
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Metadata reported by /health
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="userflow-backend")
    APP_VERSION: str = Field(default="0.1.0")


@lru_cache()
def get_settings() -> Settings:
    """Return the process-wide Settings instance."""
    return Settings()


settings = get_settings()

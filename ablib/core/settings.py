from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration, read from ABLIB_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ABLIB_", env_file=".env", extra="ignore"
    )

    # Empty string means no persistent local store in this environment
    LOCAL_DATABASE_URL: str = "sqlite:///./ablib_cache.db"
    REMOTE_DATABASE_URL: str = "sqlite:///./ablib_remote.db"
    STORAGE_QUOTA_BYTES: int = Field(default=5 * 1024 * 1024, gt=0)

    STALE_AFTER_SECONDS: float = 5 * 60

    SYNC_MAX_RETRIES: int = Field(default=5, ge=1)
    SYNC_BASE_DELAY_MS: int = Field(default=1000, ge=0)
    SYNC_MAX_DELAY_MS: int = Field(default=30000, ge=0)
    SYNC_JITTER_RATIO: float = Field(default=0.3, ge=0.0)

    POLL_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)

    HASHING_SALT: str = "ablib-dev"
    HASHING_VERSION: int = 1

    TOKENS: list[str] = Field(default_factory=list)
    LOG_LEVEL: str = "INFO"


config_settings = Settings()

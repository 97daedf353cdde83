"""Store and cache configuration pulled from environment variables via pydantic."""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.logging_utils import get_tagged_logger, mask_url
logger = get_tagged_logger(__name__, tag="config")


class Settings(BaseSettings):
    """Environment-driven configuration for the Redis session store."""
    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")

    host: str = "localhost"
    port: int = 6379
    password: str | None = None
    db: int = 0
    url: str | None = None  # when set, overrides host/port/db/password
    max_connections: int = 10
    pool_timeout_seconds: float = 5.0
    reconnect_retries: int = 10
    cache_ttl: int = 3600
    cache_max_entries: int = 10_000
    cache_sweep_interval_seconds: float = 300.0
    batch_size: int = 100
    log_level: str = "INFO"

    @field_validator("password", mode="before")
    @classmethod
    def blank_password_is_unset(cls, v):
        """Treat an empty or whitespace-only password as no password."""
        if v is None or not str(v).strip():
            return None
        return v

    @field_validator("batch_size", "max_connections", "cache_max_entries", mode="after")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        """Reject sizes that would make pipelines or pools unusable."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    def connection_url(self) -> str:
        """Return the Redis URL this configuration connects to."""
        if self.url:
            return self.url
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"

    def masked_url(self) -> str:
        """Return the connection URL with credentials hidden, for logs and status output."""
        return mask_url(self.connection_url())


settings = Settings()


if __name__ == "__main__":
    logger.setLevel("DEBUG")
    logger.debug(f"Loaded settings: {settings.model_dump_json(indent=4, exclude={'password'})}")

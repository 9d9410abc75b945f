"""Application configuration via pydantic-settings.

All environment-specific values are read from the process environment or `.env`.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from the environment."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    app_name: str = Field(default="order-fulfillment", alias="APP_NAME")
    api_cors_origins: str = Field(default="http://localhost", alias="API_CORS_ORIGINS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    postgres_host: str = Field(default="localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")
    postgres_db: str = Field(default="orders", alias="POSTGRES_DB")
    postgres_user: str = Field(default="orders", alias="POSTGRES_USER")
    postgres_password: str = Field(default="orders", alias="POSTGRES_PASSWORD")

    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    cache_ttl_seconds: int = Field(default=60, gt=0, alias="CACHE_TTL_SECONDS")

    rabbitmq_url: str = Field(default="amqp://localhost:5672", alias="RABBITMQ_URL")
    rabbitmq_connection_timeout: float = Field(
        default=30.0, gt=0, alias="RABBITMQ_CONNECTION_TIMEOUT"
    )
    rabbitmq_max_reconnect_attempts: int = Field(
        default=5, ge=1, alias="RABBITMQ_MAX_RECONNECT_ATTEMPTS"
    )
    rabbitmq_reconnect_base_delay_ms: int = Field(
        default=1000, ge=0, alias="RABBITMQ_RECONNECT_BASE_DELAY_MS"
    )
    rabbitmq_reconnect_max_delay_ms: int = Field(
        default=30000, ge=0, alias="RABBITMQ_RECONNECT_MAX_DELAY_MS"
    )
    rabbitmq_prefetch: int = Field(default=10, ge=1, alias="RABBITMQ_PREFETCH")
    rabbitmq_max_retries: int = Field(default=3, ge=0, alias="RABBITMQ_MAX_RETRIES")
    rabbitmq_retry_delay_ms: int = Field(default=5000, ge=0, alias="RABBITMQ_RETRY_DELAY_MS")
    rabbitmq_publish_timeout: float = Field(default=10.0, gt=0, alias="RABBITMQ_PUBLISH_TIMEOUT")

    payments_queue: str = Field(default="payments.processed", alias="PAYMENTS_QUEUE")

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> Settings:
        if self.rabbitmq_reconnect_base_delay_ms > self.rabbitmq_reconnect_max_delay_ms:
            raise ValueError(
                "RABBITMQ_RECONNECT_BASE_DELAY_MS must not exceed RABBITMQ_RECONNECT_MAX_DELAY_MS"
            )
        return self

    @property
    def database_dsn(self) -> str:
        """Return SQLAlchemy async DSN for PostgreSQL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_dsn(self) -> str:
        """Return Redis DSN."""
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


@lru_cache
def get_settings() -> Settings:
    return Settings()

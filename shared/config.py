"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "restock-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "restock"
    database_url_override: Optional[str] = None

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Redis (for funnel analytics)
    redis_host: str = "localhost"
    redis_port: int = 6379

    # Outbound links and email identity
    public_base_url: str = "http://localhost:3000"
    email_from_address: str = "noreply@example.com"
    email_from_name: str = "Shop"
    currency: str = "EUR"

    # Advisory purchase-link hold
    reservation_window_minutes: int = 30
    reservation_secret: str = "change-me"

    # Reconciliation
    expiry_sweep_interval_seconds: int = 3600
    low_stock_threshold: int = 5
    deduct_fulfilled_backorders: bool = True

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        return f"redis://{self.redis_host}:{self.redis_port}"

    class Config:
        env_file = ".env"
        case_sensitive = False

"""
Sales Aggregation Engine
Centralized Configuration Management

Pydantic settings with environment variable support, validation and type
safety. The aggregation section doubles as the runtime-settable engine
configuration: the service copies it and re-validates every update.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="craft_marketplace", alias="database", description="Database name")
    user: str = Field(default="aggregator", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=50, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    url: Optional[str] = Field(default=None, description="Redis URL (overrides host/port)")
    namespace: str = Field(default="sales_aggregates", description="Key namespace for aggregate documents")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka Streaming Configuration"""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    consumer_group: str = Field(default="sales-aggregation", description="Consumer group ID")
    auto_offset_reset: str = Field(default="earliest", description="Auto offset reset policy")
    max_poll_records: int = Field(default=500, description="Max poll records")
    session_timeout_ms: int = Field(default=30000, description="Session timeout")
    heartbeat_interval_ms: int = Field(default=10000, description="Heartbeat interval")
    topics_sales_events: str = Field(default="sales-events", description="Sales events topic")
    backpressure_retry_ms: int = Field(default=1000, description="Pause before re-offering a message rejected by backpressure")
    record_attempts: int = Field(default=3, gt=0, description="Attempts to persist a raw event before dead-lettering it")
    record_retry_ms: int = Field(default=500, ge=0, description="Base pause between record attempts")


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")
    prometheus_port: int = Field(default=9108, alias="PROMETHEUS_PORT", description="Prometheus exporter port")


class AggregationSettings(BaseSettings):
    """
    Aggregation Engine Configuration

    Every field can be changed at runtime through
    SalesAggregationService.update_config; changing update_interval_ms
    restarts the flush timer without discarding queued buckets.
    """

    model_config = SettingsConfigDict(env_prefix="AGGREGATION_", validate_assignment=True)

    enable_real_time_updates: bool = Field(default=True, description="Queue incoming events for flushing")
    batch_size: int = Field(default=50, gt=0, description="Max bucket identities flushed per cycle")
    update_interval_ms: int = Field(default=5000, gt=0, description="Flush timer interval")
    retention_days: int = Field(default=365, gt=0, description="Days persisted aggregates are kept after their period ends")

    # Backpressure and fault handling
    max_pending_buckets: int = Field(default=100_000, gt=0, description="Queue high-water mark")
    operation_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for each read and upsert")
    max_attempts: int = Field(default=5, gt=0, description="Computation attempts before dead-lettering")
    retry_backoff_base_seconds: float = Field(default=1.0, ge=0, description="First retry delay")
    retry_backoff_max_seconds: float = Field(default=300.0, ge=0, description="Retry delay ceiling")

    @property
    def update_interval_seconds(self) -> float:
        """Flush interval in seconds"""
        return self.update_interval_ms / 1000


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="sales-aggregation", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()

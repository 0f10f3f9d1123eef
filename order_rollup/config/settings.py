"""
Order Rollup Analytics
Centralized Configuration Management

Configuration for the order-analytics aggregator using Pydantic settings
with environment variable support, validation, and type safety.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Document Store Database Configuration"""
    
    model_config = SettingsConfigDict(env_prefix="POSTGRES_", populate_by_name=True)
    
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="nightlife_analytics", alias="database", description="Database name")
    user: str = Field(default="nightlife", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    connect_timeout: float = Field(default=30.0, gt=0, description="Connection timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Database URL (overrides host/port)")
    
    @property
    def async_url(self) -> str:
        """Async database URL - uses DATABASE_URL if set, otherwise builds one for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka Order-Change Stream Configuration"""
    
    model_config = SettingsConfigDict(env_prefix="KAFKA_")
    
    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    consumer_group: str = Field(default="order-rollup", description="Consumer group ID")
    auto_offset_reset: str = Field(default="earliest", description="Auto offset reset policy")
    max_poll_records: int = Field(default=100, description="Max poll records")
    session_timeout_ms: int = Field(default=30000, description="Session timeout")
    heartbeat_interval_ms: int = Field(default=10000, description="Heartbeat interval")
    
    topics_order_changes: str = Field(
        default="finished-orders.changes",
        description="Topic carrying before/after images of order writes",
    )


class RollupSettings(BaseSettings):
    """Aggregator Configuration"""
    
    model_config = SettingsConfigDict(env_prefix="ROLLUP_")
    
    rollup_collection: str = Field(default="analytics_events", description="Collection holding event rollups")
    events_collection: str = Field(default="evento", description="Collection holding event records")
    max_transaction_attempts: int = Field(default=5, ge=1, description="Attempts before a transaction is aborted")
    transaction_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for one transaction attempt")
    club_lookup_timeout_seconds: float = Field(default=2.0, gt=0, description="Timeout for the club lookup")
    invocation_timeout_seconds: float = Field(default=30.0, gt=0, description="Overall timeout per order change")


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""
    
    model_config = SettingsConfigDict(env_prefix="")
    
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")
    metrics_port: int = Field(default=9108, alias="METRICS_PORT", description="Prometheus exporter port, 0 disables")


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
        populate_by_name=True,
    )
    
    # Application
    app_name: str = Field(default="order-rollup", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    
    # Version
    version: str = Field(default="1.0.0", description="Application version")
    
    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    rollup: RollupSettings = Field(default_factory=RollupSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    
    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()
    
    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.
    
    Uses LRU cache to ensure settings are only loaded once.
    
    Returns:
        Settings: Application settings instance
    """
    return Settings()

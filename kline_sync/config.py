"""
Configuration module for the kline sync service.
All process settings are loaded from environment variables; runtime switches
that operators toggle live in the system_config table instead.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "Kline Sync"
    app_version: str = "1.0.0"
    schema_version: str = "1.0"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///./kline_sync.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_seconds: int = 30

    # Logging
    log_level: str = "INFO"

    # Exchange REST
    binance_base_url: str = "https://api.binance.com"
    request_timeout_seconds: int = 10
    retry_attempts: int = 3
    retry_backoff_base_seconds: float = 0.3

    circuit_failure_threshold: int = 5
    circuit_recovery_timeout_seconds: int = 60
    circuit_half_open_max_attempts: int = 2

    # Sync engine
    max_klines_per_request: int = 1000
    request_interval_ms: int = 200
    segment_days: int = 30
    first_sync_lookback_hours: int = 24
    upsert_batch_size: int = 500
    reconnect_backfill_threshold_seconds: int = 60
    backfill_initial_delay_seconds: float = 5
    backfill_poll_seconds: float = 1
    config_cache_ttl_seconds: int = 60

    # Scheduler
    scheduler_enabled: bool = True
    history_sync_interval_seconds: int = 3600
    gap_detect_interval_seconds: int = 3600
    gap_fill_interval_seconds: int = 3600

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = Settings()

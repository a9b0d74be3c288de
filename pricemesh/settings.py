import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Backends
    backends_config_path: str = Field(
        default="config/backends.yaml", alias="BACKENDS_CONFIG_PATH"
    )
    backend_request_timeout: float = Field(
        default=10.0, gt=0, alias="BACKEND_REQUEST_TIMEOUT"
    )
    credential_prefix: str = Field(default="", alias="CREDENTIAL_PREFIX")

    # Cache
    cache_dir: str = Field(default=".cache/pricemesh", alias="CACHE_DIR")
    cache_memory_limit_bytes: int = Field(
        default=50 * 1024 * 1024, gt=0, alias="CACHE_MEMORY_LIMIT_BYTES"
    )
    cache_memory_max_entries: int = Field(
        default=1000, gt=0, alias="CACHE_MEMORY_MAX_ENTRIES"
    )
    cache_disk_limit_bytes: int = Field(
        default=200 * 1024 * 1024, gt=0, alias="CACHE_DISK_LIMIT_BYTES"
    )
    cache_default_ttl_seconds: int = Field(
        default=3600, gt=0, alias="CACHE_DEFAULT_TTL_SECONDS"
    )
    search_ttl_seconds: int = Field(default=300, gt=0, alias="SEARCH_TTL_SECONDS")
    popular_ttl_seconds: int = Field(default=3600, gt=0, alias="POPULAR_TTL_SECONDS")
    details_ttl_seconds: int = Field(default=600, gt=0, alias="DETAILS_TTL_SECONDS")
    popular_queries_raw: str = Field(default="", alias="POPULAR_QUERIES")
    cache_maintenance_interval_seconds: float = Field(
        default=600.0, gt=0, alias="CACHE_MAINTENANCE_INTERVAL"
    )

    # Deduplicator
    dedup_max_join_window_seconds: float = Field(
        default=300.0, gt=0, alias="DEDUP_MAX_JOIN_WINDOW"
    )
    dedup_reap_interval_seconds: float = Field(
        default=60.0, gt=0, alias="DEDUP_REAP_INTERVAL"
    )

    # Quota governor
    quota_daily_limit: int = Field(default=200, ge=0, alias="QUOTA_DAILY_LIMIT")
    quota_monthly_limit: int = Field(default=5000, ge=0, alias="QUOTA_MONTHLY_LIMIT")
    quota_hard_stop_percent: float = Field(
        default=90.0, gt=0, le=100, alias="QUOTA_HARD_STOP_PERCENT"
    )
    quota_protection_enabled: bool = Field(
        default=True, alias="QUOTA_PROTECTION_ENABLED"
    )
    quota_fallback_mode: bool = Field(default=False, alias="QUOTA_FALLBACK_MODE")

    # Circuit breaker
    breaker_failure_threshold: int = Field(
        default=5, ge=1, alias="BREAKER_FAILURE_THRESHOLD"
    )
    breaker_rolling_window_seconds: float = Field(
        default=60.0, gt=0, alias="BREAKER_ROLLING_WINDOW"
    )
    breaker_cool_down_seconds: float = Field(
        default=30.0, gt=0, alias="BREAKER_COOL_DOWN"
    )

    # Rate limiter
    rate_limit_queue_timeout_seconds: float = Field(
        default=60.0, gt=0, alias="RATE_LIMIT_QUEUE_TIMEOUT"
    )
    rate_limit_pump_interval_seconds: float = Field(
        default=0.1, gt=0, alias="RATE_LIMIT_PUMP_INTERVAL"
    )
    rate_limit_cleanup_interval_seconds: float = Field(
        default=10.0, gt=0, alias="RATE_LIMIT_CLEANUP_INTERVAL"
    )

    # Aggregation
    similarity_threshold: float = Field(
        default=0.8, ge=0, le=1, alias="SIMILARITY_THRESHOLD"
    )
    multi_source_name: str = Field(default="Multi-Source", alias="MULTI_SOURCE_NAME")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./pricemesh.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="DEBUG")

    @property
    def popular_queries(self) -> frozenset[str]:
        return frozenset(
            q.strip() for q in self.popular_queries_raw.split(",") if q.strip()
        )

    @property
    def search_ttl(self) -> timedelta:
        return timedelta(seconds=self.search_ttl_seconds)

    @property
    def popular_ttl(self) -> timedelta:
        return timedelta(seconds=self.popular_ttl_seconds)

    @property
    def details_ttl(self) -> timedelta:
        return timedelta(seconds=self.details_ttl_seconds)

    @property
    def cache_default_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_default_ttl_seconds)


def load_settings(env_file: str | None = None) -> Settings:
    """Load ``.env`` (if present) and validate the environment into Settings."""
    load_dotenv(env_file)
    return Settings.model_validate(dict(os.environ))

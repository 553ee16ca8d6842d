from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DEPOT_", env_file=".env", extra="ignore")

    app_name: str = "depot"

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    redis_socket_timeout: float = Field(default=5.0, validation_alias="REDIS_SOCKET_TIMEOUT")
    redis_connect_timeout: float = Field(default=10.0, validation_alias="REDIS_CONNECT_TIMEOUT")

    # Cache
    cache_enabled: bool = Field(default=True, validation_alias="CACHE_ENABLED")
    cache_backend: str = Field(default="redis", validation_alias="CACHE_BACKEND")
    cache_key_prefix: str = Field(default="wms", validation_alias="CACHE_KEY_PREFIX")
    cache_default_ttl: int = Field(default=3600, gt=0, validation_alias="CACHE_DEFAULT_TTL")
    cache_atomic_invalidation: bool = Field(
        default=True, validation_alias="CACHE_ATOMIC_INVALIDATION"
    )

    # Distributed locks
    lock_default_ttl_ms: int = Field(default=30000, gt=0, validation_alias="LOCK_DEFAULT_TTL_MS")
    lock_default_timeout_ms: int = Field(
        default=5000, ge=0, validation_alias="LOCK_DEFAULT_TIMEOUT_MS"
    )
    lock_retry_interval_ms: int = Field(
        default=100, gt=0, validation_alias="LOCK_RETRY_INTERVAL_MS"
    )

    # In-process tier for memoized results
    local_tier_max_size: int = Field(default=2000, gt=0, validation_alias="LOCAL_TIER_MAX_SIZE")

    # Refresh-ahead
    refresh_enabled: bool = Field(default=True, validation_alias="CACHE_REFRESH_ENABLED")
    refresh_threshold: float = Field(
        default=0.7, gt=0, le=1, validation_alias="CACHE_REFRESH_THRESHOLD"
    )
    refresh_max_concurrent: int = Field(
        default=5, gt=0, validation_alias="CACHE_REFRESH_MAX_CONCURRENT"
    )
    refresh_min_interval: float = Field(
        default=60.0, ge=0, validation_alias="CACHE_REFRESH_MIN_INTERVAL"
    )
    refresh_poll_interval: float = Field(
        default=30.0, gt=0, validation_alias="CACHE_REFRESH_POLL_INTERVAL"
    )

    # Observability
    enable_metrics: bool = Field(default=True, validation_alias="ENABLE_METRICS")
    log_level: str = "INFO"
    log_json: bool = True


settings = Settings()

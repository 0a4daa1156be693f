from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALGORITHMS = ("fixed-window", "sliding-window", "token-bucket")
STORAGE_BACKENDS = ("memory", "redis")
LOG_FORMATS = ("text", "structured", "json")


class Settings(BaseSettings):
    """Rate limiter settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Explicit constructor arguments on RateLimiter and the storage providers
    always take priority over these values.
    """

    # Enables the configuration summary logged when a limiter is built
    verbose: bool = False

    # Rate limiting defaults
    rate_limit_window_ms: int = 60_000
    rate_limit_max_requests: int = 100  # 0 blocks every request
    rate_limit_algorithm: str = "fixed-window"
    rate_limit_storage: str = "memory"  # memory | redis
    rate_limit_draft_mode: bool = False
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when storage is unavailable
    )

    # Memory storage settings
    memory_enable_auto_cleanup: bool = True
    memory_cleanup_interval_ms: int = 60_000
    memory_timestamp_retention_ms: int = 3_600_000  # 1 hour, independent of window size
    memory_sweep_budget_ms: int = 10  # Max time spent per background sweep

    # Redis settings
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "ratelimit:"
    redis_enable_sliding_window: bool = False
    redis_strict: bool = False  # Raise StorageError instead of degrading

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("rate_limit_window_ms", "memory_cleanup_interval_ms")
    @classmethod
    def validate_interval_positive(cls, v: int) -> int:
        """Validate window and interval values are positive."""
        if v < 1:
            raise ValueError("Interval values must be at least 1 millisecond")
        return v

    @field_validator("rate_limit_max_requests")
    @classmethod
    def validate_max_requests(cls, v: int) -> int:
        """Validate the request ceiling is not negative."""
        if v < 0:
            raise ValueError("rate_limit_max_requests must not be negative")
        return v

    @field_validator("rate_limit_algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ALGORITHMS:
            raise ValueError(f"rate_limit_algorithm must be one of {ALGORITHMS}")
        return v

    @field_validator("rate_limit_storage")
    @classmethod
    def validate_storage(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in STORAGE_BACKENDS:
            raise ValueError(f"rate_limit_storage must be one of {STORAGE_BACKENDS}")
        return v

    @field_validator("memory_timestamp_retention_ms", "memory_sweep_budget_ms")
    @classmethod
    def validate_memory_limits(cls, v: int) -> int:
        if v < 1:
            raise ValueError("memory storage limits must be at least 1 millisecond")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {LOG_FORMATS}")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Durations are in seconds.
    """

    # Deployment environment (development | staging | production)
    environment: str = "development"

    # Debug mode - enables verbose event bus logging
    debug: bool = False

    # Bearer token for /admin endpoints; admin API is refused while empty
    admin_token: str = ""

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Circuit breaker defaults
    circuit_failure_threshold: int = 5  # Failures before opening
    circuit_success_threshold: int = 3  # Half-open successes before closing
    circuit_open_duration_seconds: float = 30.0  # Time in OPEN before probing
    circuit_call_timeout_seconds: float = 10.0
    circuit_max_call_timeout_seconds: float = 60.0  # Hard cap for any call
    circuit_max_concurrent: int = 10
    circuit_max_queue_depth: int = 50
    circuit_stats_window_seconds: float = 60.0
    circuit_stats_retention_seconds: float = 3600.0
    circuit_history_max_entries: int = 1000
    circuit_prune_interval_seconds: float = 60.0
    register_default_circuits: bool = True

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_cleanup_interval_seconds: float = 60.0
    rate_limit_entry_ttl_seconds: float = 24 * 60 * 60
    rate_limit_max_entries: int = 100_000

    # Ban escalation
    ban_threshold: int = 10  # Violations before temp ban
    ban_temp_duration_seconds: float = 5 * 60
    ban_perma_threshold: int = 50  # Violations before permanent ban
    ban_decay_per_hour: float = 1.0
    ban_history_size: int = 100

    # Event bus settings
    event_bus_max_handlers_per_event: int = 21
    event_bus_history_size: int = 100
    event_bus_handler_timeout_seconds: float = 5.0
    event_bus_max_events_per_second: int = 100

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @field_validator(
        "circuit_failure_threshold",
        "circuit_success_threshold",
        "circuit_max_concurrent",
        "circuit_history_max_entries",
        "rate_limit_max_entries",
        "ban_threshold",
        "ban_perma_threshold",
        "ban_history_size",
        "event_bus_max_handlers_per_event",
        "event_bus_history_size",
        "event_bus_max_events_per_second",
    )
    @classmethod
    def validate_count_positive(cls, v: int) -> int:
        """Validate counters and capacities are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("circuit_max_queue_depth")
    @classmethod
    def validate_queue_depth(cls, v: int) -> int:
        """A queue depth of zero disables queueing."""
        if v < 0:
            raise ValueError("circuit_max_queue_depth must not be negative")
        return v

    @field_validator(
        "circuit_open_duration_seconds",
        "circuit_call_timeout_seconds",
        "circuit_max_call_timeout_seconds",
        "circuit_stats_window_seconds",
        "circuit_stats_retention_seconds",
        "circuit_prune_interval_seconds",
        "rate_limit_cleanup_interval_seconds",
        "rate_limit_entry_ttl_seconds",
        "ban_temp_duration_seconds",
        "event_bus_handler_timeout_seconds",
    )
    @classmethod
    def validate_duration_positive(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("ban_decay_per_hour")
    @classmethod
    def validate_decay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("ban_decay_per_hour must not be negative")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()

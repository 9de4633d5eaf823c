"""Centralized settings for trackedits via Pydantic BaseSettings.

All configuration is read from environment variables with the TRACKEDITS_
prefix, falling back to the defaults defined here. Set values in a .env file
or export them in the shell before starting the host process.

Components accept a ``Settings`` instance in their constructor and fall back to
the module-level ``settings`` singleton, so tests can build isolated settings
without touching the environment.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Environment variable names are formed by uppercasing the field name and
    prepending the TRACKEDITS_ prefix.  Example: TRACKEDITS_LOCK_TIMEOUT_MS
    overrides lock_timeout_ms.
    """

    # Edit clustering
    enable_clustering: bool = True
    cluster_time_window_ms: float = Field(default=2000.0, ge=0)  # max gap between edits of one cluster
    spatial_threshold_chars: int = Field(default=5, ge=0)        # adjacency tolerance in characters

    # Document locks
    lock_timeout_ms: float = Field(default=5000.0, gt=0)         # bounded wait for acquisition
    lock_ttl_ms: float = Field(default=30000.0, gt=0)            # expiry of a granted lock
    lock_backoff_initial_ms: float = Field(default=10.0, gt=0)
    lock_backoff_max_ms: float = Field(default=250.0, gt=0)

    # Producers
    max_priority_level: int = Field(default=5, ge=1)             # priorities range over 0..max

    # Conflict detection and merging
    overlap_tolerance_chars: int = Field(default=0, ge=0)        # intersections up to this size are ignored
    merge_time_window_ms: float = Field(default=5000.0, ge=0)    # "same time window" for compatible merge
    merge_max_attempts: int = Field(default=5, ge=1)             # strategy attempts per conflict
    default_confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    # Feedback-loop guard
    loop_guard_max_hops: int = Field(default=10, ge=0)
    loop_guard_window_ms: float = Field(default=30000.0, gt=0)
    loop_guard_oscillation_threshold: int = Field(default=3, ge=2)

    model_config = SettingsConfigDict(
        env_prefix="TRACKEDITS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Module-level singleton: import this throughout the codebase
settings = Settings()

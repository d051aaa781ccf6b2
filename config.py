"""
Configuration settings for the retention scheduler.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Database
    # ========================================
    database_url: str = Field(
        default="sqlite:///data/retention.db",
        description="SQLAlchemy connection string (SQLite or PostgreSQL)",
    )
    store_backend: Literal["sql", "memory"] = Field(
        default="sql",
        description="Review schedule store implementation",
    )
    store_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout applied to every store call",
    )
    store_workers: int = Field(
        default=8,
        description="Worker threads used to run store calls with a timeout",
    )

    # ========================================
    # Cache
    # ========================================
    cache_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Cache backend for derived views",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection string (cache_backend=redis)",
    )
    redis_socket_timeout: float = Field(
        default=2.0,
        description="Redis socket timeout in seconds",
    )
    cache_key_prefix: str = Field(
        default="srs",
        description="Namespace prepended to every cache key",
    )
    cache_ttl_due_seconds: int = Field(
        default=300,
        description="TTL of the due-today view",
    )
    cache_ttl_overdue_seconds: int = Field(
        default=180,
        description="TTL of the overdue view (changes often)",
    )
    cache_ttl_stats_seconds: int = Field(
        default=600,
        description="TTL of per-student statistics",
    )
    cache_ttl_performance_seconds: int = Field(
        default=1800,
        description="TTL of per-item performance",
    )
    cache_ttl_last_known_good_seconds: int = Field(
        default=86400,
        description="TTL of last-known-good copies served when the store is down",
    )

    # ========================================
    # Concurrency
    # ========================================
    lock_shards: int = Field(
        default=64,
        description="Number of mutex shards for per-(student, item) serialization",
    )

    # ========================================
    # Interval Policy
    # ========================================
    policy_seed_interval: float = Field(
        default=1.0,
        description="Interval (days) of a brand-new schedule",
    )
    policy_seed_ease: float = Field(
        default=2.5,
        description="Ease factor of a brand-new schedule",
    )
    policy_min_interval: float = Field(
        default=1.0,
        description="Minimum interval in days",
    )
    policy_max_interval: float = Field(
        default=365.0,
        description="Maximum interval in days",
    )
    policy_min_ease: float = Field(
        default=1.3,
        description="Ease factor floor",
    )
    policy_max_ease: float = Field(
        default=4.0,
        description="Ease factor ceiling",
    )
    policy_failure_reset_threshold: int = Field(
        default=2,
        description="Consecutive Again grades before the interval resets",
    )
    policy_again_ease_penalty: float = Field(
        default=0.2,
        description="Ease decrease applied when the interval resets",
    )
    policy_hard_interval_divisor: float = Field(
        default=1.2,
        description="Hard divides the interval by this value (> 1.0)",
    )
    policy_hard_ease_penalty: float = Field(
        default=0.15,
        description="Ease decrease on Hard",
    )
    policy_easy_bonus: float = Field(
        default=1.3,
        description="Extra interval multiplier on Easy",
    )
    policy_easy_ease_bonus: float = Field(
        default=0.15,
        description="Ease increase on Easy",
    )
    policy_late_grace_days: float = Field(
        default=1.0,
        description="Days past next-due before a review counts as late",
    )
    policy_late_ease_penalty: float = Field(
        default=0.05,
        description="Ease decrease applied to late reviews",
    )
    policy_late_interval_factor: float = Field(
        default=0.9,
        description="Interval multiplier applied to late reviews",
    )

    # ========================================
    # Views
    # ========================================
    overdue_grace_days: float = Field(
        default=1.0,
        description="Days past next-due before an item is reported overdue",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default="logs/retention_scheduler.log",
        description="Log file path (None for stderr only)",
    )

    # ========================================
    # Helper Methods
    # ========================================
    def get_policy_config(self) -> dict[str, float | int]:
        """Get interval policy parameters as a dictionary."""
        return {
            "seed_interval": self.policy_seed_interval,
            "seed_ease": self.policy_seed_ease,
            "min_interval": self.policy_min_interval,
            "max_interval": self.policy_max_interval,
            "min_ease": self.policy_min_ease,
            "max_ease": self.policy_max_ease,
            "failure_reset_threshold": self.policy_failure_reset_threshold,
            "again_ease_penalty": self.policy_again_ease_penalty,
            "hard_interval_divisor": self.policy_hard_interval_divisor,
            "hard_ease_penalty": self.policy_hard_ease_penalty,
            "easy_bonus": self.policy_easy_bonus,
            "easy_ease_bonus": self.policy_easy_ease_bonus,
            "late_grace_days": self.policy_late_grace_days,
            "late_ease_penalty": self.policy_late_ease_penalty,
            "late_interval_factor": self.policy_late_interval_factor,
        }

    def get_cache_ttls(self) -> dict[str, int]:
        """Get cache TTLs (seconds) per view."""
        return {
            "due": self.cache_ttl_due_seconds,
            "overdue": self.cache_ttl_overdue_seconds,
            "stats": self.cache_ttl_stats_seconds,
            "performance": self.cache_ttl_performance_seconds,
            "last_known_good": self.cache_ttl_last_known_good_seconds,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

"""Plan cache defaults and environment overrides."""

from __future__ import annotations

from dataclasses import dataclass

from .env import optional_env_value
from .errors import ConfigurationError

DEFAULT_CACHE_MAX_ENTRIES = 1000
DEFAULT_CACHE_MAX_AGE_DAYS = 30
DEFAULT_CACHE_PURGE_PROBABILITY = 0.02


@dataclass(frozen=True, slots=True)
class CacheConfig:
    max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    max_age_days: int = DEFAULT_CACHE_MAX_AGE_DAYS
    purge_probability: float = DEFAULT_CACHE_PURGE_PROBABILITY

    def __post_init__(self) -> None:
        if self.max_entries < 1:
            raise ConfigurationError("Cache max entries must be positive")
        if self.max_age_days < 0:
            raise ConfigurationError("Cache max age must be non-negative")
        if not 0.0 <= self.purge_probability <= 1.0:
            raise ConfigurationError("Cache purge probability must be within [0, 1]")


def get_cache_config() -> CacheConfig:
    return CacheConfig(
        max_entries=optional_env_value(
            "ERAMERGE_CACHE_MAX_ENTRIES", DEFAULT_CACHE_MAX_ENTRIES, int
        ),
        max_age_days=optional_env_value(
            "ERAMERGE_CACHE_MAX_AGE_DAYS", DEFAULT_CACHE_MAX_AGE_DAYS, int
        ),
        purge_probability=optional_env_value(
            "ERAMERGE_CACHE_PURGE_PROBABILITY", DEFAULT_CACHE_PURGE_PROBABILITY, float
        ),
    )

"""Application configuration helpers."""

from __future__ import annotations

from .cache import CacheConfig, get_cache_config
from .errors import ConfigurationError
from .logging import configure_logging
from .storage import (
    DatabaseConfig,
    StorageConfig,
    get_database_config,
    get_database_uri,
    get_storage_config,
)

__all__ = [
    "CacheConfig",
    "ConfigurationError",
    "DatabaseConfig",
    "StorageConfig",
    "configure_logging",
    "get_cache_config",
    "get_database_config",
    "get_database_uri",
    "get_storage_config",
]

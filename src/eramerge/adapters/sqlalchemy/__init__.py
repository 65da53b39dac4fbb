"""SQLAlchemy adapter package for eramerge."""

from __future__ import annotations

from .mappings import merge_template_cache_table, metadata
from .repositories import SqlAlchemyTemplateStore
from .tables import (
    SqlAlchemySourceTable,
    SqlAlchemyTableGateway,
    SqlAlchemyTargetTable,
    describe_table,
)
from .unit_of_work import (
    SqlAlchemyMergeUnitOfWork,
    StartupError,
    enable_sqlite_savepoints,
    is_started,
    shutdown,
    startup,
)

__all__ = [
    "SqlAlchemyMergeUnitOfWork",
    "SqlAlchemySourceTable",
    "SqlAlchemyTableGateway",
    "SqlAlchemyTargetTable",
    "SqlAlchemyTemplateStore",
    "StartupError",
    "describe_table",
    "enable_sqlite_savepoints",
    "is_started",
    "merge_template_cache_table",
    "metadata",
    "shutdown",
    "startup",
]

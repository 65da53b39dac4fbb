"""Temporal merge core: reconcile time-versioned source rows into a temporal table.

Layered flow:
1) classify columns into a merge template (memoized by the plan cache)
2) parse source rows and load the affected target timelines
3) resolve every row to an existing or pending entity
4) plan each entity: atomic segments, payload per mode, coalescing, diff
5) execute entity by entity, founding new identities first
6) report one feedback record per source row
"""

from __future__ import annotations

from .cache import CacheEntry, CacheStats, PlanCache, SchemaChangeNotifier
from .contracts import (
    DeleteMode,
    FeedbackStatus,
    MergeMode,
    MergeRequest,
    PlanAction,
    UpdateEffect,
)
from .engine import MergeResult, TemporalMergeEngine
from .eras import Era, EraCatalog, StaticEraCatalog
from .errors import (
    IdentityConflictError,
    MergeAbortedError,
    MergeConfigurationError,
    MergeError,
    TargetWriteError,
    UnknownEraError,
)
from .feedback import FeedbackRecord
from .intervals import AllenRelation, Interval, allen_relation
from .plan import MergePlan, PlanOperation
from .template import ColumnInfo, MergeTemplate, TableSchema

__all__ = [
    "AllenRelation",
    "CacheEntry",
    "CacheStats",
    "ColumnInfo",
    "DeleteMode",
    "Era",
    "EraCatalog",
    "FeedbackRecord",
    "FeedbackStatus",
    "IdentityConflictError",
    "Interval",
    "MergeAbortedError",
    "MergeConfigurationError",
    "MergeError",
    "MergeMode",
    "MergePlan",
    "MergeRequest",
    "MergeResult",
    "MergeTemplate",
    "PlanAction",
    "PlanCache",
    "PlanOperation",
    "SchemaChangeNotifier",
    "StaticEraCatalog",
    "TableSchema",
    "TargetWriteError",
    "TemporalMergeEngine",
    "UnknownEraError",
    "UpdateEffect",
    "allen_relation",
]

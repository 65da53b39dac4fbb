"""Ports connecting the merge engine to storage."""

from __future__ import annotations

from .persistence import SliceQuery, SourceRowset, TableGateway, TargetTimeline, TemplateStore
from .unit_of_work import MergeRepositories, MergeUnitOfWork, RepositoryCollection, UnitOfWork

__all__ = [
    "MergeRepositories",
    "MergeUnitOfWork",
    "RepositoryCollection",
    "SliceQuery",
    "SourceRowset",
    "TableGateway",
    "TargetTimeline",
    "TemplateStore",
    "UnitOfWork",
]

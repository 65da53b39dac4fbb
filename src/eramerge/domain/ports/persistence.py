"""Ports for reading and writing the tables a merge works on."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from contextlib import AbstractContextManager
    from datetime import datetime

    from eramerge.domain.merge.cache import CacheEntry, CacheStats
    from eramerge.domain.merge.template import TableSchema


@dataclass(frozen=True, slots=True)
class SliceQuery:
    """Select target rows whose ``columns`` take one of ``values``."""

    columns: tuple[str, ...]
    values: frozenset[tuple[object, ...]]


@runtime_checkable
class TargetTimeline(Protocol):
    """The temporal table a merge writes into."""

    @property
    def name(self) -> str: ...

    def describe(self) -> TableSchema: ...

    def load(self, queries: Sequence[SliceQuery] | None) -> list[Mapping[str, object]]:
        """Return matching rows; ``None`` loads the whole table."""
        ...

    def insert(
        self, values: Mapping[str, object], *, generate: Sequence[str] = ()
    ) -> dict[str, object]:
        """Insert one slice and return the values generated for ``generate``."""
        ...

    def update(self, key: Mapping[str, object], values: Mapping[str, object]) -> None: ...

    def delete(self, key: Mapping[str, object]) -> None: ...

    def entity_scope(self) -> AbstractContextManager[None]:
        """Savepoint around one entity's writes; failures surface as ``TargetWriteError``."""
        ...


@runtime_checkable
class SourceRowset(Protocol):
    """The batch of source rows of one merge call."""

    @property
    def name(self) -> str: ...

    def describe(self) -> TableSchema: ...

    def rows(self) -> list[Mapping[str, object]]: ...

    def write_back(
        self,
        row_id_column: str,
        values_by_row: Mapping[object, Mapping[str, object]],
    ) -> None: ...


@runtime_checkable
class TableGateway(Protocol):
    """Opens target and source adapters by table name."""

    def target(self, name: str) -> TargetTimeline: ...

    def source(self, name: str) -> SourceRowset: ...


@runtime_checkable
class TemplateStore(Protocol):
    """Cross-transaction (L2) storage of merge templates."""

    def fetch(self, cache_key: str) -> CacheEntry | None: ...

    def touch(self, cache_key: str, *, used_at: datetime) -> None: ...

    def store(self, entry: CacheEntry) -> None: ...

    def remove(self, cache_key: str) -> None: ...

    def invalidate(self, target: str | None = None) -> int: ...

    def purge(self, *, unused_since: datetime, max_entries: int) -> int: ...

    def stats(self) -> CacheStats: ...

"""In-memory implementations of the merge ports."""

from __future__ import annotations

import copy
import itertools
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from eramerge.domain.merge.cache import CacheEntry, CacheStats, touched
from eramerge.domain.merge.errors import TargetWriteError
from eramerge.domain.merge.template import ColumnInfo, TableSchema

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
    from datetime import datetime

    from eramerge.domain.ports.persistence import SliceQuery

type Row = dict[str, object]
type RowCheck = Callable[[Mapping[str, object]], str | None]


def schema_from_rows(name: str, rows: Iterable[Mapping[str, object]]) -> TableSchema:
    """Infer a permissive schema (all columns nullable) from sample rows."""

    columns: dict[str, str] = {}
    for row in rows:
        for column, value in row.items():
            if value is not None:
                columns[column] = type(value).__name__
            else:
                columns.setdefault(column, "NoneType")
    return TableSchema(
        name=name,
        columns=tuple(
            ColumnInfo(name=column, type_name=type_name) for column, type_name in columns.items()
        ),
    )


@dataclass(frozen=True, slots=True)
class Exclusion:
    """Non-overlap rule per entity, mirroring the era subsystem's constraint."""

    entity_columns: tuple[str, ...]
    valid_from_column: str = "valid_from"
    valid_until_column: str = "valid_until"


class InMemoryTargetTimeline:
    def __init__(
        self,
        schema: TableSchema,
        rows: Iterable[Mapping[str, object]] = (),
        *,
        checks: Sequence[RowCheck] = (),
        exclusion: Exclusion | None = None,
    ) -> None:
        self.schema = schema
        self.rows: list[Row] = [dict(row) for row in rows]
        self.checks = tuple(checks)
        self.exclusion = exclusion
        self.statements: list[tuple[str, Row]] = []
        self._sequences: dict[str, Iterator[int]] = {}

    @property
    def name(self) -> str:
        return self.schema.name

    def describe(self) -> TableSchema:
        return self.schema

    def load(self, queries: Sequence[SliceQuery] | None) -> list[Mapping[str, object]]:
        if queries is None:
            return [dict(row) for row in self.rows]
        return [
            dict(row)
            for row in self.rows
            if any(
                tuple(row.get(column) for column in query.columns) in query.values
                for query in queries
            )
        ]

    def _next_value(self, column: str) -> int:
        sequence = self._sequences.get(column)
        if sequence is None:
            current = [value for row in self.rows if isinstance(value := row.get(column), int)]
            sequence = itertools.count(max(current, default=0) + 1)
            self._sequences[column] = sequence
        return next(sequence)

    def insert(
        self, values: Mapping[str, object], *, generate: Sequence[str] = ()
    ) -> dict[str, object]:
        row = {column.name: None for column in self.schema.columns}
        row.update(values)
        generated = {column: self._next_value(column) for column in generate}
        row.update(generated)
        self._check(row, ignore=None)
        self.rows.append(row)
        self.statements.append(("insert", dict(row)))
        return generated

    def update(self, key: Mapping[str, object], values: Mapping[str, object]) -> None:
        index = self._locate(key)
        row = dict(self.rows[index])
        row.update(values)
        self._check(row, ignore=index)
        self.rows[index] = row
        self.statements.append(("update", dict(row)))

    def delete(self, key: Mapping[str, object]) -> None:
        index = self._locate(key)
        row = self.rows.pop(index)
        self.statements.append(("delete", row))

    @contextmanager
    def entity_scope(self) -> Iterator[None]:
        snapshot = copy.deepcopy(self.rows)
        statements = len(self.statements)
        try:
            yield
        except TargetWriteError:
            self.rows = snapshot
            del self.statements[statements:]
            raise

    def _locate(self, key: Mapping[str, object]) -> int:
        matches = [
            index
            for index, row in enumerate(self.rows)
            if all(row.get(column) == value for column, value in key.items())
        ]
        if len(matches) != 1:
            raise TargetWriteError(
                f"Expected exactly one row of {self.name!r} for {dict(key)!r}, found {len(matches)}"
            )
        return matches[0]

    def _check(self, row: Mapping[str, object], *, ignore: int | None) -> None:
        for column in self.schema.columns:
            if not column.nullable and not column.has_default and row.get(column.name) is None:
                raise TargetWriteError(
                    f"NOT NULL constraint failed: {self.name}.{column.name}"
                )
        for check in self.checks:
            message = check(row)
            if message is not None:
                raise TargetWriteError(message)
        if self.exclusion is None:
            return
        rule = self.exclusion
        entity = tuple(row.get(column) for column in rule.entity_columns)
        for index, other in enumerate(self.rows):
            if index == ignore:
                continue
            if tuple(other.get(column) for column in rule.entity_columns) != entity:
                continue
            start: Any = row[rule.valid_from_column]
            end: Any = row[rule.valid_until_column]
            if start < other[rule.valid_until_column] and other[rule.valid_from_column] < end:
                raise TargetWriteError(
                    f"Overlapping slices for {self.name} entity {entity!r}"
                )


class InMemorySourceRowset:
    def __init__(
        self,
        rows: Iterable[Mapping[str, object]],
        *,
        name: str = "source",
        schema: TableSchema | None = None,
    ) -> None:
        self.data: list[Row] = [dict(row) for row in rows]
        self._name = name
        self.schema = schema or schema_from_rows(name, self.data)

    @property
    def name(self) -> str:
        return self._name

    def describe(self) -> TableSchema:
        return self.schema

    def rows(self) -> list[Mapping[str, object]]:
        return [dict(row) for row in self.data]

    def write_back(
        self,
        row_id_column: str,
        values_by_row: Mapping[object, Mapping[str, object]],
    ) -> None:
        for row in self.data:
            values = values_by_row.get(row.get(row_id_column))
            if values is not None:
                row.update(values)


class InMemoryTemplateStore:
    """Thread-safe template store; readers and writers share one lock."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def fetch(self, cache_key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(cache_key)

    def touch(self, cache_key: str, *, used_at: datetime) -> None:
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is not None:
                self._entries[cache_key] = touched(entry, used_at)

    def store(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.cache_key] = replace(entry)

    def remove(self, cache_key: str) -> None:
        with self._lock:
            self._entries.pop(cache_key, None)

    def invalidate(self, target: str | None = None) -> int:
        with self._lock:
            doomed = [
                key
                for key, entry in self._entries.items()
                if target is None or entry.target_name == target
            ]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def purge(self, *, unused_since: datetime, max_entries: int) -> int:
        with self._lock:
            doomed = {
                key for key, entry in self._entries.items() if entry.last_used_at < unused_since
            }
            survivors = sorted(
                (entry for key, entry in self._entries.items() if key not in doomed),
                key=lambda entry: entry.last_used_at,
            )
            excess = len(survivors) - max_entries
            if excess > 0:
                doomed.update(entry.cache_key for entry in survivors[:excess])
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def stats(self) -> CacheStats:
        with self._lock:
            entries = list(self._entries.values())
        if not entries:
            return CacheStats()
        return CacheStats(
            total_entries=len(entries),
            oldest_entry=min(entry.created_at for entry in entries),
            newest_entry=max(entry.created_at for entry in entries),
            most_used=max(entry.use_count for entry in entries),
            least_used=min(entry.use_count for entry in entries),
        )

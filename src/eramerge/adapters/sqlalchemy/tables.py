"""Target and source table adapters over SQLAlchemy Core tables."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, cast

from sqlalchemy import (
    ColumnElement,
    MetaData,
    Table,
    and_,
    delete,
    insert,
    or_,
    select,
    tuple_,
    update,
)
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from eramerge.domain.merge.errors import TargetWriteError
from eramerge.domain.merge.template import ColumnInfo, TableSchema

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from sqlalchemy import Column, CursorResult, Delete, Update
    from sqlalchemy.orm import Session

    from eramerge.domain.ports.persistence import SliceQuery

log = logging.getLogger(__name__)


def _error_text(exc: SQLAlchemyError) -> str:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig)
    return str(exc)


def _is_generated(table: Table, column: Column[Any]) -> bool:
    return (
        column.computed is not None
        or column.identity is not None
        or column is table.autoincrement_column
    )


def describe_table(table: Table) -> TableSchema:
    """Translate table metadata into the merge engine's column descriptions."""

    columns: list[ColumnInfo] = []
    for column in table.columns:
        generated = _is_generated(table, column)
        columns.append(
            ColumnInfo(
                name=column.name,
                type_name=type(column.type).__name__,
                nullable=bool(column.nullable),
                has_default=(
                    generated
                    or column.default is not None
                    or column.server_default is not None
                ),
                generated=generated,
            )
        )
    return TableSchema(name=table.fullname, columns=tuple(columns))


class SqlAlchemyTable:
    def __init__(self, session: Session, table: Table) -> None:
        self.session = session
        self.table = table

    @property
    def name(self) -> str:
        return self.table.fullname

    def describe(self) -> TableSchema:
        return describe_table(self.table)

    def _match(self, key: Mapping[str, object]) -> ColumnElement[bool]:
        return and_(*(self.table.c[column] == value for column, value in key.items()))


class SqlAlchemyTargetTable(SqlAlchemyTable):
    """Temporal target table; every write runs inside the caller's session."""

    def load(self, queries: Sequence[SliceQuery] | None) -> list[Mapping[str, object]]:
        stmt = select(self.table)
        if queries is not None:
            conditions: list[ColumnElement[bool]] = []
            for query in queries:
                if not query.values:
                    continue
                if len(query.columns) == 1:
                    column = self.table.c[query.columns[0]]
                    conditions.append(column.in_([value[0] for value in query.values]))
                else:
                    columns = tuple_(*(self.table.c[name] for name in query.columns))
                    conditions.append(columns.in_(list(query.values)))
            if not conditions:
                return []
            stmt = stmt.where(or_(*conditions))
        return [dict(row) for row in self.session.execute(stmt).mappings()]

    def insert(
        self, values: Mapping[str, object], *, generate: Sequence[str] = ()
    ) -> dict[str, object]:
        stmt = insert(self.table).values(dict(values))
        if generate:
            stmt = stmt.return_defaults(*(self.table.c[name] for name in generate))
        try:
            result = cast("CursorResult[object]", self.session.execute(stmt))
        except SQLAlchemyError as exc:
            raise TargetWriteError(_error_text(exc)) from exc
        return {name: self._generated_value(result, name) for name in generate}

    def _generated_value(self, result: CursorResult[object], name: str) -> object:
        returned = result.returned_defaults
        if returned is not None and name in returned._mapping:  # noqa: SLF001
            return returned._mapping[name]  # noqa: SLF001
        params = result.last_inserted_params()
        if params.get(name) is not None:
            return params[name]
        primary_key = [column.name for column in self.table.primary_key.columns]
        if name in primary_key and result.inserted_primary_key is not None:
            return result.inserted_primary_key[primary_key.index(name)]
        return None

    def update(self, key: Mapping[str, object], values: Mapping[str, object]) -> None:
        stmt = update(self.table).where(self._match(key)).values(dict(values))
        self._execute_single(stmt, key, "update")

    def delete(self, key: Mapping[str, object]) -> None:
        stmt = delete(self.table).where(self._match(key))
        self._execute_single(stmt, key, "delete")

    def _execute_single(
        self, stmt: Update | Delete, key: Mapping[str, object], verb: str
    ) -> None:
        try:
            result = cast("CursorResult[object]", self.session.execute(stmt))
        except SQLAlchemyError as exc:
            raise TargetWriteError(_error_text(exc)) from exc
        if result.rowcount != 1:
            raise TargetWriteError(
                f"Expected to {verb} exactly one row of {self.name!r} for {dict(key)!r}, "
                f"matched {result.rowcount}"
            )

    @contextmanager
    def entity_scope(self) -> Iterator[None]:
        try:
            with self.session.begin_nested():
                yield
        except SQLAlchemyError as exc:
            raise TargetWriteError(_error_text(exc)) from exc


class SqlAlchemySourceTable(SqlAlchemyTable):
    """Staging table holding one batch of source rows."""

    def rows(self) -> list[Mapping[str, object]]:
        stmt = select(self.table).order_by(*self.table.primary_key.columns)
        return [dict(row) for row in self.session.execute(stmt).mappings()]

    def write_back(
        self,
        row_id_column: str,
        values_by_row: Mapping[object, Mapping[str, object]],
    ) -> None:
        row_id = self.table.c[row_id_column]
        for key, values in values_by_row.items():
            if values:
                self.session.execute(update(self.table).where(row_id == key).values(dict(values)))
        log.debug("Wrote back %d source rows of %s", len(values_by_row), self.name)


class SqlAlchemyTableGateway:
    """Opens tables from ``metadata`` when declared there, otherwise by reflection."""

    def __init__(self, session: Session, metadata: MetaData | None = None) -> None:
        self.session = session
        self.metadata = metadata
        self._reflected = MetaData()

    def table(self, name: str) -> Table:
        if self.metadata is not None and name in self.metadata.tables:
            return self.metadata.tables[name]
        if name in self._reflected.tables:
            return self._reflected.tables[name]
        schema, _, table_name = name.rpartition(".")
        log.debug("Reflecting table %s", name)
        return Table(
            table_name,
            self._reflected,
            schema=schema or None,
            autoload_with=self.session.connection(),
        )

    def target(self, name: str) -> SqlAlchemyTargetTable:
        return SqlAlchemyTargetTable(self.session, self.table(name))

    def source(self, name: str) -> SqlAlchemySourceTable:
        return SqlAlchemySourceTable(self.session, self.table(name))

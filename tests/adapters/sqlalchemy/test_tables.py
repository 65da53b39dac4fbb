from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import func, select

from eramerge.adapters.sqlalchemy.tables import SqlAlchemyTableGateway, describe_table
from eramerge.domain.merge import TargetWriteError
from eramerge.domain.ports.persistence import SliceQuery
from tests.helpers.merge import d
from tests.helpers.tables import FIRST_GENERATED_ID, PERSON, PERSON_SOURCE, insert_rows

if TYPE_CHECKING:
    from sqlalchemy import MetaData
    from sqlalchemy.orm import Session


def _person_count(session: Session, metadata: MetaData) -> int:
    table = metadata.tables[PERSON]
    return session.execute(select(func.count()).select_from(table)).scalar_one()


def test_describe_table_classifies_defaults(person_metadata: MetaData) -> None:
    schema = describe_table(person_metadata.tables[PERSON])

    slice_id = schema.get("slice_id")
    entity_id = schema.get("id")
    department = schema.get("department")
    assert slice_id is not None and slice_id.generated
    assert entity_id is not None and entity_id.has_default and not entity_id.generated
    assert department is not None and not department.nullable and not department.has_default
    assert schema.name == PERSON


def test_gateway_reflects_undeclared_tables(
    sqlite_session: Session, person_metadata: MetaData
) -> None:
    gateway = SqlAlchemyTableGateway(sqlite_session)

    table = gateway.table(PERSON)

    assert table is not person_metadata.tables[PERSON]
    assert gateway.table(PERSON) is table
    assert [column.name for column in table.columns] == [
        column.name for column in person_metadata.tables[PERSON].columns
    ]


def test_insert_returns_generated_identity(
    sqlite_session: Session, person_metadata: MetaData
) -> None:
    target = SqlAlchemyTableGateway(sqlite_session, person_metadata).target(PERSON)

    generated = target.insert(
        {"department": "Sales", "valid_from": d(2020), "valid_until": d(2021)},
        generate=["id"],
    )

    assert generated == {"id": FIRST_GENERATED_ID}
    [row] = target.load([SliceQuery(("id",), frozenset({(FIRST_GENERATED_ID,)}))])
    assert row["department"] == "Sales"


def test_load_by_composite_key(sqlite_session: Session, person_metadata: MetaData) -> None:
    insert_rows(
        sqlite_session,
        person_metadata.tables[PERSON],
        [
            {"id": 1, "department": "A", "valid_from": d(2020), "valid_until": d(2021)},
            {"id": 1, "department": "B", "valid_from": d(2021), "valid_until": d(2022)},
        ],
    )
    target = SqlAlchemyTableGateway(sqlite_session, person_metadata).target(PERSON)

    rows = target.load([SliceQuery(("id", "valid_from"), frozenset({(1, d(2021))}))])

    assert [row["department"] for row in rows] == ["B"]
    assert target.load([]) == []


def test_update_of_missing_slice_fails(
    sqlite_session: Session, person_metadata: MetaData
) -> None:
    target = SqlAlchemyTableGateway(sqlite_session, person_metadata).target(PERSON)

    with pytest.raises(TargetWriteError, match="matched 0"):
        target.update({"id": 1, "valid_from": d(2020)}, {"department": "X"})


def test_entity_scope_rolls_back_to_savepoint(
    sqlite_session: Session, person_metadata: MetaData
) -> None:
    target = SqlAlchemyTableGateway(sqlite_session, person_metadata).target(PERSON)
    target.insert({"id": 1, "department": "Kept", "valid_from": d(2019), "valid_until": d(2020)})

    with pytest.raises(TargetWriteError, match="department_allowed"), target.entity_scope():
        target.insert(
            {"id": 2, "department": "Sales", "valid_from": d(2020), "valid_until": d(2021)}
        )
        target.insert(
            {"id": 2, "department": "Forbidden", "valid_from": d(2021), "valid_until": d(2022)}
        )

    assert _person_count(sqlite_session, person_metadata) == 1


def test_source_rows_and_write_back(sqlite_session: Session, person_metadata: MetaData) -> None:
    insert_rows(
        sqlite_session,
        person_metadata.tables[PERSON_SOURCE],
        [
            {"row_id": 2, "valid_from": d(2021), "valid_until": d(2022)},
            {"row_id": 1, "valid_from": d(2020), "valid_until": d(2021)},
        ],
    )
    source = SqlAlchemyTableGateway(sqlite_session, person_metadata).source(PERSON_SOURCE)

    source.write_back("row_id", {1: {"merge_status": "APPLIED"}, 2: {}})

    rows = source.rows()
    assert [row["row_id"] for row in rows] == [1, 2]
    assert [row["merge_status"] for row in rows] == ["APPLIED", None]

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from eramerge.app import cache_stats, invalidate_cache, run_temporal_merge
from eramerge.domain.merge import FeedbackStatus, MergeAbortedError
from tests.helpers.merge import d, person_request
from tests.helpers.tables import FIRST_GENERATED_ID, PERSON, PERSON_SOURCE, insert_rows

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from sqlalchemy import MetaData
    from sqlalchemy.engine import Engine

    from eramerge.adapters.sqlalchemy.unit_of_work import SqlAlchemyMergeUnitOfWork

    UowFactory = Callable[[], SqlAlchemyMergeUnitOfWork]


def _seed(
    engine: Engine,
    metadata: MetaData,
    *,
    target: Iterable[Mapping[str, object]] = (),
    source: Iterable[Mapping[str, object]] = (),
) -> None:
    with Session(engine) as session:
        insert_rows(session, metadata.tables[PERSON], target)
        insert_rows(session, metadata.tables[PERSON_SOURCE], source)
        session.commit()


def _timeline(engine: Engine, metadata: MetaData, entity_id: int) -> list[tuple[object, ...]]:
    table = metadata.tables[PERSON]
    stmt = (
        select(table.c.valid_from, table.c.valid_until, table.c.name, table.c.department)
        .where(table.c.id == entity_id)
        .order_by(table.c.valid_from)
    )
    with Session(engine) as session:
        return [tuple(row) for row in session.execute(stmt)]


def _source(engine: Engine, metadata: MetaData) -> list[dict[str, object]]:
    table = metadata.tables[PERSON_SOURCE]
    with Session(engine) as session:
        rows = session.execute(select(table).order_by(table.c.row_id)).mappings()
        return [dict(row) for row in rows]


def test_patch_splits_existing_slice(
    sqlite_engine: Engine, person_metadata: MetaData, sqlite_unit_of_work: UowFactory
) -> None:
    _seed(
        sqlite_engine,
        person_metadata,
        target=[
            {
                "id": 1,
                "employee_no": "E1",
                "name": "Ann",
                "department": "Sales",
                "valid_from": d(2020),
                "valid_until": d(2024),
            }
        ],
        source=[
            {
                "row_id": 1,
                "id": 1,
                "department": "Support",
                "valid_from": d(2021),
                "valid_until": d(2022),
            }
        ],
    )

    result = run_temporal_merge(person_request(), unit_of_work_factory=sqlite_unit_of_work)

    assert result.summary() == {FeedbackStatus.APPLIED: 1}
    assert _timeline(sqlite_engine, person_metadata, 1) == [
        (d(2020), d(2021), "Ann", "Sales"),
        (d(2021), d(2022), "Ann", "Support"),
        (d(2022), d(2024), "Ann", "Sales"),
    ]
    assert cache_stats(unit_of_work_factory=sqlite_unit_of_work).total_entries == 1


def test_rerun_is_skipped_as_identical(
    sqlite_engine: Engine, person_metadata: MetaData, sqlite_unit_of_work: UowFactory
) -> None:
    _seed(
        sqlite_engine,
        person_metadata,
        source=[
            {
                "row_id": 1,
                "id": 5,
                "employee_no": "E5",
                "department": "Sales",
                "valid_from": d(2020),
                "valid_until": d(2021),
            }
        ],
    )
    run_temporal_merge(person_request(), unit_of_work_factory=sqlite_unit_of_work)

    again = run_temporal_merge(person_request(), unit_of_work_factory=sqlite_unit_of_work)

    assert again.summary() == {FeedbackStatus.SKIPPED_IDENTICAL: 1}
    assert _timeline(sqlite_engine, person_metadata, 5) == [(d(2020), d(2021), None, "Sales")]
    assert cache_stats(unit_of_work_factory=sqlite_unit_of_work).most_used == 2


def test_generated_identity_and_feedback_are_written_back(
    sqlite_engine: Engine, person_metadata: MetaData, sqlite_unit_of_work: UowFactory
) -> None:
    _seed(
        sqlite_engine,
        person_metadata,
        source=[
            {
                "row_id": 1,
                "employee_no": "E9",
                "department": "Sales",
                "valid_from": d(2020),
                "valid_until": d(2021),
            },
            {
                "row_id": 2,
                "employee_no": "E9",
                "department": "Support",
                "valid_from": d(2021),
                "valid_until": d(2022),
            },
        ],
    )
    request = person_request(
        update_source_with_identity=True,
        update_source_with_feedback=True,
        feedback_status_column="merge_status",
        feedback_error_column="merge_error",
    )

    run_temporal_merge(request, unit_of_work_factory=sqlite_unit_of_work)

    assert _timeline(sqlite_engine, person_metadata, FIRST_GENERATED_ID) == [
        (d(2020), d(2021), None, "Sales"),
        (d(2021), d(2022), None, "Support"),
    ]
    source = _source(sqlite_engine, person_metadata)
    assert [row["id"] for row in source] == [FIRST_GENERATED_ID, FIRST_GENERATED_ID]
    assert [row["merge_status"] for row in source] == ["APPLIED", "APPLIED"]
    assert [row["merge_error"] for row in source] == [None, None]


def _sales_and_forbidden() -> list[dict[str, object]]:
    return [
        {
            "row_id": 1,
            "employee_no": "E1",
            "department": "Sales",
            "valid_from": d(2020),
            "valid_until": d(2021),
        },
        {
            "row_id": 2,
            "employee_no": "E2",
            "department": "Forbidden",
            "valid_from": d(2020),
            "valid_until": d(2021),
        },
    ]


def test_failed_entity_does_not_affect_others(
    sqlite_engine: Engine, person_metadata: MetaData, sqlite_unit_of_work: UowFactory
) -> None:
    _seed(sqlite_engine, person_metadata, source=_sales_and_forbidden())
    request = person_request(
        update_source_with_feedback=True,
        feedback_status_column="merge_status",
        feedback_error_column="merge_error",
    )

    result = run_temporal_merge(request, unit_of_work_factory=sqlite_unit_of_work)

    assert result.summary() == {FeedbackStatus.APPLIED: 1, FeedbackStatus.ERROR: 1}
    source = _source(sqlite_engine, person_metadata)
    assert [row["merge_status"] for row in source] == ["APPLIED", "ERROR"]
    error = source[1]["merge_error"]
    assert isinstance(error, str)
    assert "department_allowed" in error
    assert len(_timeline(sqlite_engine, person_metadata, FIRST_GENERATED_ID)) == 1


def test_atomic_merge_rolls_back_everything(
    sqlite_engine: Engine, person_metadata: MetaData, sqlite_unit_of_work: UowFactory
) -> None:
    _seed(sqlite_engine, person_metadata, source=_sales_and_forbidden())
    request = person_request(
        atomic=True,
        update_source_with_feedback=True,
        feedback_status_column="merge_status",
    )

    with pytest.raises(MergeAbortedError) as excinfo:
        run_temporal_merge(request, unit_of_work_factory=sqlite_unit_of_work)

    assert excinfo.value.result is not None
    assert excinfo.value.result.has_errors
    assert FeedbackStatus.APPLIED not in excinfo.value.result.summary()
    with Session(sqlite_engine) as session:
        assert session.execute(select(person_metadata.tables[PERSON])).first() is None
    assert [row["merge_status"] for row in _source(sqlite_engine, person_metadata)] == [None, None]
    assert cache_stats(unit_of_work_factory=sqlite_unit_of_work).total_entries == 0


def test_invalidate_cache_removes_templates(
    sqlite_engine: Engine, person_metadata: MetaData, sqlite_unit_of_work: UowFactory
) -> None:
    _seed(
        sqlite_engine,
        person_metadata,
        source=[
            {
                "row_id": 1,
                "id": 1,
                "department": "Sales",
                "valid_from": d(2020),
                "valid_until": d(2021),
            }
        ],
    )
    run_temporal_merge(person_request(), unit_of_work_factory=sqlite_unit_of_work)

    assert invalidate_cache("elsewhere", unit_of_work_factory=sqlite_unit_of_work) == 0
    assert invalidate_cache(PERSON, unit_of_work_factory=sqlite_unit_of_work) == 1
    assert cache_stats(unit_of_work_factory=sqlite_unit_of_work).total_entries == 0

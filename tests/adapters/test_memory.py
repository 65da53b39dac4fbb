from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from eramerge.adapters.memory import (
    Exclusion,
    InMemorySourceRowset,
    InMemoryTargetTimeline,
    InMemoryTemplateStore,
    schema_from_rows,
)
from eramerge.domain.merge import CacheEntry, TargetWriteError
from eramerge.domain.ports.persistence import SliceQuery, SourceRowset, TargetTimeline
from tests.helpers.merge import (
    build_person_template,
    d,
    person_request,
    person_schema,
    slice_row,
    source_row,
)

T0 = datetime(2024, 1, 1, tzinfo=UTC)


def _timeline() -> InMemoryTargetTimeline:
    return InMemoryTargetTimeline(
        person_schema(),
        [slice_row(1, d(2020), d(2021), name="Ann"), slice_row(2, d(2020), d(2021), name="Bob")],
        exclusion=Exclusion(entity_columns=("id",)),
    )


def _entry(key: str, *, target: str = "person", used_at: datetime = T0) -> CacheEntry:
    return CacheEntry(
        cache_key=key,
        target_name=target,
        source_signature="sig",
        template=build_person_template(person_request(), [source_row(1, d(2020), d(2021))]),
        created_at=used_at,
        last_used_at=used_at,
    )


def test_adapters_satisfy_ports() -> None:
    assert isinstance(_timeline(), TargetTimeline)
    assert isinstance(InMemorySourceRowset([]), SourceRowset)


def test_schema_inference_keeps_first_seen_column_order() -> None:
    schema = schema_from_rows("s", [{"a": None, "b": 1}, {"a": "x", "c": None}])

    assert [column.name for column in schema.columns] == ["a", "b", "c"]
    assert [column.type_name for column in schema.columns] == ["str", "int", "NoneType"]


def test_load_filters_by_any_query() -> None:
    timeline = _timeline()

    rows = timeline.load([SliceQuery(columns=("id",), values=frozenset({(2,)}))])

    assert [row["name"] for row in rows] == ["Bob"]
    assert len(timeline.load(None)) == 2


def test_insert_generates_values_after_existing_maximum() -> None:
    timeline = _timeline()

    generated = timeline.insert(
        {"valid_from": d(2020), "valid_until": d(2021), "name": "Cy"}, generate=["id"]
    )

    assert generated == {"id": 3}
    assert timeline.statements[-1][0] == "insert"


def test_overlapping_slice_is_rejected() -> None:
    timeline = _timeline()

    with pytest.raises(TargetWriteError, match="Overlapping"):
        timeline.insert({"id": 1, "valid_from": d(2020, 6), "valid_until": d(2022)})


def test_update_requires_exactly_one_match() -> None:
    timeline = _timeline()

    with pytest.raises(TargetWriteError, match="found 0"):
        timeline.update({"id": 9}, {"name": "x"})
    with pytest.raises(TargetWriteError, match="found 2"):
        timeline.delete({"valid_from": d(2020)})


def test_entity_scope_restores_rows_on_write_error() -> None:
    timeline = _timeline()

    with pytest.raises(TargetWriteError), timeline.entity_scope():
        timeline.update({"id": 1, "valid_from": d(2020)}, {"name": "Changed"})
        timeline.insert({"id": 1, "valid_from": d(2020), "valid_until": d(2022)})

    assert [row["name"] for row in timeline.rows] == ["Ann", "Bob"]
    assert timeline.statements == []


def test_source_write_back_updates_matching_rows() -> None:
    source = InMemorySourceRowset([{"row_id": 1, "status": None}, {"row_id": 2, "status": None}])

    source.write_back("row_id", {2: {"status": "APPLIED"}})

    assert [row["status"] for row in source.data] == [None, "APPLIED"]


def test_template_store_purges_by_age_then_recency() -> None:
    store = InMemoryTemplateStore()
    store.store(_entry("stale", used_at=T0 - timedelta(days=40)))
    store.store(_entry("old", used_at=T0 - timedelta(days=2)))
    store.store(_entry("new", used_at=T0 - timedelta(days=1)))

    removed = store.purge(unused_since=T0 - timedelta(days=30), max_entries=1)

    assert removed == 2
    assert store.fetch("new") is not None


def test_template_store_touch_and_stats() -> None:
    store = InMemoryTemplateStore()
    store.store(_entry("a", target="person"))
    store.store(_entry("b", target="payroll", used_at=T0 + timedelta(hours=1)))

    store.touch("a", used_at=T0 + timedelta(hours=2))
    stats = store.stats()

    assert stats.total_entries == 2
    assert (stats.most_used, stats.least_used) == (2, 1)
    assert stats.oldest_entry == T0
    assert store.invalidate("payroll") == 1
    assert store.invalidate() == 1
    assert store.stats().total_entries == 0

from __future__ import annotations

from eramerge.domain.merge.records import parse_target_row
from eramerge.domain.merge.resolve import FoundingArena, resolve_identities
from tests.helpers.merge import (
    build_person_template,
    d,
    parse_records,
    person_request,
    slice_row,
    source_row,
)


def test_founding_group_attaches_to_entity_matched_by_natural_key() -> None:
    rows = [
        source_row(1, d(2020), d(2021), employee_no="E1", founding_id="f1"),
        source_row(2, d(2021), d(2022), employee_no=None, founding_id="f1"),
    ]
    template = build_person_template(person_request(founding_id_column="founding_id"), rows)
    slices = [parse_target_row(slice_row(7, d(2019), d(2020), employee_no="E1"), template)]

    resolution = resolve_identities(parse_records(template, rows), slices, template)

    [group] = resolution.groups
    assert not group.ref.is_new
    assert dict(group.ref.identity) == {"id": 7}
    assert [record.row_id for record in group.records] == [1, 2]
    assert len(resolution.arena) == 0


def test_founding_group_matching_two_entities_fails_every_row() -> None:
    rows = [
        source_row(1, d(2020), d(2021), employee_no="E1", founding_id="f1"),
        source_row(2, d(2021), d(2022), employee_no="E2", founding_id="f1"),
        source_row(3, d(2021), d(2022), employee_no=None, founding_id="f1"),
    ]
    template = build_person_template(person_request(founding_id_column="founding_id"), rows)
    slices = [
        parse_target_row(slice_row(7, d(2019), d(2020), employee_no="E1"), template),
        parse_target_row(slice_row(8, d(2019), d(2020), employee_no="E2"), template),
    ]

    resolution = resolve_identities(parse_records(template, rows), slices, template)

    assert resolution.groups == []
    assert sorted(failure.row_id for failure in resolution.failures) == [1, 2, 3]


def test_rows_sharing_any_natural_key_become_one_pending_entity() -> None:
    request = person_request(natural_key_sets=[("employee_no",), ("name",)])
    rows = [
        source_row(1, d(2020), d(2021), employee_no="E5", name=None),
        source_row(2, d(2021), d(2022), employee_no="E5", name="Eve"),
        source_row(3, d(2022), d(2023), employee_no=None, name="Eve"),
    ]
    template = build_person_template(request, rows)

    resolution = resolve_identities(parse_records(template, rows), [], template)

    [group] = resolution.groups
    assert group.ref.is_new
    assert [record.row_id for record in group.records] == [1, 2, 3]
    assert dict(group.ref.natural) == {"employee_no": "E5", "name": "Eve"}


def test_supplied_identity_for_unknown_entity_is_a_new_entity() -> None:
    rows = [source_row(1, d(2020), d(2021), entity_id=42)]
    template = build_person_template(person_request(), rows)

    resolution = resolve_identities(parse_records(template, rows), [], template)

    [group] = resolution.groups
    assert group.ref.is_new
    assert group.ref.resolved_identity(resolution.arena) == {"id": 42}


def test_unmatched_target_entities_are_included_on_request() -> None:
    rows = [source_row(1, d(2020), d(2021), entity_id=1)]
    template = build_person_template(person_request(), rows)
    slices = [
        parse_target_row(slice_row(1, d(2020), d(2021)), template),
        parse_target_row(slice_row(2, d(2020), d(2021)), template),
    ]

    resolution = resolve_identities(
        parse_records(template, rows), slices, template, include_unmatched_targets=True
    )

    assert [len(group.records) for group in resolution.groups] == [1, 0]
    assert dict(resolution.groups[1].ref.identity) == {"id": 2}


def test_arena_forgets_generated_values() -> None:
    arena = FoundingArena()
    pending = arena.claim("natural:x")
    assert arena.claim("natural:x") is pending

    arena.assign(pending.slot, {"id": 5})
    assert pending.has_identity
    arena.forget(pending.slot, ["id"])

    assert not pending.has_identity

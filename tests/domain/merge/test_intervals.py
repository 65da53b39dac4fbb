from __future__ import annotations

import pytest

from eramerge.domain.merge.intervals import (
    AllenRelation,
    Interval,
    allen_relation,
    atomic_intervals,
    is_covered,
    union,
)


@pytest.mark.parametrize(
    ("x", "y", "expected"),
    [
        ((1, 2), (3, 4), AllenRelation.BEFORE),
        ((1, 3), (3, 4), AllenRelation.MEETS),
        ((1, 3), (2, 4), AllenRelation.OVERLAPS),
        ((1, 2), (1, 4), AllenRelation.STARTS),
        ((2, 3), (1, 4), AllenRelation.DURING),
        ((3, 4), (1, 4), AllenRelation.FINISHES),
        ((1, 4), (1, 4), AllenRelation.EQUALS),
        ((3, 4), (1, 2), AllenRelation.AFTER),
        ((3, 4), (1, 3), AllenRelation.MET_BY),
        ((2, 4), (1, 3), AllenRelation.OVERLAPPED_BY),
        ((1, 4), (1, 2), AllenRelation.STARTED_BY),
        ((1, 4), (2, 3), AllenRelation.CONTAINS),
        ((1, 4), (3, 4), AllenRelation.FINISHED_BY),
    ],
)
def test_allen_relation(
    x: tuple[int, int], y: tuple[int, int], expected: AllenRelation
) -> None:
    assert allen_relation(Interval(*x), Interval(*y)) is expected
    assert allen_relation(Interval(*y), Interval(*x)) is expected.inverse


def test_interval_rejects_empty_and_null_bounds() -> None:
    with pytest.raises(ValueError, match="before end"):
        Interval(3, 3)
    with pytest.raises(ValueError, match="NULL"):
        Interval(None, 3)


def test_half_open_intervals_that_meet_do_not_overlap() -> None:
    assert not Interval(1, 3).overlaps(Interval(3, 5))
    assert Interval(1, 4).overlaps(Interval(3, 5))


def test_union_merges_overlapping_and_meeting_intervals() -> None:
    merged = union([Interval(5, 6), Interval(1, 3), Interval(3, 4), Interval(2, 3)])

    assert merged == [Interval(1, 4), Interval(5, 6)]


def test_is_covered_requires_a_gapless_union() -> None:
    assert is_covered(Interval(2, 5), [Interval(1, 3), Interval(3, 6)])
    assert not is_covered(Interval(2, 5), [Interval(1, 3), Interval(4, 6)])


def test_atomic_intervals_split_at_every_boundary() -> None:
    pieces = atomic_intervals([Interval(1, 5), Interval(3, 8)])

    assert pieces == [Interval(1, 3), Interval(3, 5), Interval(5, 8)]

"""Half-open validity intervals and Allen's interval algebra."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

type Bound = Any


class AllenRelation(StrEnum):
    BEFORE = "before"
    MEETS = "meets"
    OVERLAPS = "overlaps"
    STARTS = "starts"
    DURING = "during"
    FINISHES = "finishes"
    EQUALS = "equals"
    AFTER = "after"
    MET_BY = "met_by"
    OVERLAPPED_BY = "overlapped_by"
    STARTED_BY = "started_by"
    CONTAINS = "contains"
    FINISHED_BY = "finished_by"

    @property
    def inverse(self) -> AllenRelation:
        return _INVERSES[self]


_INVERSES: dict[AllenRelation, AllenRelation] = {
    AllenRelation.BEFORE: AllenRelation.AFTER,
    AllenRelation.MEETS: AllenRelation.MET_BY,
    AllenRelation.OVERLAPS: AllenRelation.OVERLAPPED_BY,
    AllenRelation.STARTS: AllenRelation.STARTED_BY,
    AllenRelation.DURING: AllenRelation.CONTAINS,
    AllenRelation.FINISHES: AllenRelation.FINISHED_BY,
    AllenRelation.EQUALS: AllenRelation.EQUALS,
}
_INVERSES.update({inverse: relation for relation, inverse in list(_INVERSES.items())})


@dataclass(frozen=True, slots=True)
class Interval:
    """Validity period ``[start, end)``; bounds only need to be mutually comparable."""

    start: Bound
    end: Bound

    def __post_init__(self) -> None:
        if self.start is None or self.end is None:
            raise ValueError("Interval bounds must not be NULL")
        if not self.start < self.end:
            raise ValueError(f"Interval start {self.start!r} must be before end {self.end!r}")

    def overlaps(self, other: Interval) -> bool:
        return self.start < other.end and other.start < self.end

    def covers(self, other: Interval) -> bool:
        return self.start <= other.start and other.end <= self.end


def allen_relation(x: Interval, y: Interval) -> AllenRelation:
    """Return the Allen relation that holds from ``x`` to ``y``."""

    if x.end < y.start:
        return AllenRelation.BEFORE
    if x.end == y.start:
        return AllenRelation.MEETS
    if y.end < x.start:
        return AllenRelation.AFTER
    if y.end == x.start:
        return AllenRelation.MET_BY
    if x.start == y.start:
        if x.end == y.end:
            return AllenRelation.EQUALS
        return AllenRelation.STARTS if x.end < y.end else AllenRelation.STARTED_BY
    if x.end == y.end:
        return AllenRelation.FINISHES if x.start > y.start else AllenRelation.FINISHED_BY
    if x.start < y.start:
        return AllenRelation.OVERLAPS if x.end < y.end else AllenRelation.CONTAINS
    return AllenRelation.DURING if x.end < y.end else AllenRelation.OVERLAPPED_BY


def union(intervals: Iterable[Interval]) -> list[Interval]:
    """Merge overlapping or meeting intervals into a sorted disjoint list."""

    merged: list[Interval] = []
    for interval in sorted(intervals, key=lambda item: (item.start, item.end)):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = Interval(last.start, interval.end)
            continue
        merged.append(interval)
    return merged


def is_covered(interval: Interval, by: Iterable[Interval]) -> bool:
    """Return whether ``interval`` lies entirely within the union of ``by``."""

    return any(part.covers(interval) for part in union(by))


def boundaries(intervals: Iterable[Interval]) -> list[Bound]:
    """Sorted, de-duplicated start and end points of ``intervals``."""

    points: set[Bound] = set()
    for interval in intervals:
        points.add(interval.start)
        points.add(interval.end)
    return sorted(points)


def atomic_intervals(intervals: Sequence[Interval]) -> list[Interval]:
    """Split the span of ``intervals`` at every boundary into atomic pieces.

    Pieces that no input interval touches are still returned; callers drop
    the gaps they do not care about.
    """

    points = boundaries(intervals)
    return [Interval(start, end) for start, end in zip(points, points[1:], strict=False)]

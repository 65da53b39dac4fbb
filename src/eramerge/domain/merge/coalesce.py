"""Merge adjacent atomic segments that carry the same comparable payload."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from .intervals import Interval

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from .contracts import Payload
    from .intervals import AllenRelation
    from .records import TargetSlice


@dataclass(slots=True, kw_only=True)
class Segment:
    """A stretch of one entity's future timeline with a single payload.

    ``target`` is the pre-existing slice covering an atomic segment; after
    coalescing, ``ancestor`` is the first pre-existing slice of the merged run,
    which is the row an UPDATE would mutate.
    """

    interval: Interval
    data: Payload
    ephemeral: Payload = field(default_factory=dict["str", "object"])
    row_ids: tuple[object, ...] = ()
    target: TargetSlice | None = None
    ancestor: TargetSlice | None = None
    sourced: bool = False
    source_relation: AllenRelation | None = None


def comparable(payload: Mapping[str, object]) -> dict[str, object]:
    """Payload with NULLs dropped; absent and NULL attributes compare equal."""

    return {key: value for key, value in payload.items() if value is not None}


def payloads_equal(left: Mapping[str, object], right: Mapping[str, object]) -> bool:
    return comparable(left) == comparable(right)


def _union_ids(left: Iterable[object], right: Iterable[object]) -> tuple[object, ...]:
    return tuple(dict.fromkeys([*left, *right]))


def _can_merge(previous: Segment, segment: Segment, *, keep_existing: bool) -> bool:
    if previous.interval.end != segment.interval.start:
        return False
    if not (previous.sourced or segment.sourced):
        return False
    if keep_existing and (previous.ancestor is not None or segment.target is not None):
        return False
    return payloads_equal(previous.data, segment.data)


def coalesce_segments(
    segments: Sequence[Segment],
    *,
    keep_existing: bool = False,
) -> list[Segment]:
    """Merge meeting segments with equal data into wider ones.

    Runs made only of untouched pre-existing time are never merged, so rows
    the source does not touch stay as they are. With ``keep_existing`` no run
    may include pre-existing time at all.
    """

    merged: list[Segment] = []
    for segment in sorted(segments, key=lambda item: item.interval.start):
        if merged and _can_merge(merged[-1], segment, keep_existing=keep_existing):
            previous = merged[-1]
            ephemeral = dict(previous.ephemeral)
            ephemeral.update(comparable(segment.ephemeral))
            merged[-1] = replace(
                previous,
                interval=Interval(previous.interval.start, segment.interval.end),
                ephemeral=ephemeral,
                row_ids=_union_ids(previous.row_ids, segment.row_ids),
                ancestor=previous.ancestor or segment.target,
                sourced=True,
                source_relation=previous.source_relation or segment.source_relation,
            )
            continue
        merged.append(replace(segment, ancestor=segment.target))
    return merged

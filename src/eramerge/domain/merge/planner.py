"""Interval reconciliation: turn one entity's slices and source rows into operations.

Per entity the planner
1) drops source rows eclipsed by later rows and rejects overlaps the mode
   cannot layer,
2) cuts the combined span into atomic segments at every boundary,
3) computes each segment's payload according to the mode,
4) fills required attributes from neighbouring slices,
5) coalesces equal neighbours and
6) diffs the result against the pre-existing slices.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .coalesce import Segment, coalesce_segments, payloads_equal
from .contracts import MergeMode, PlanAction, UpdateEffect
from .eras import derive_valid_to
from .intervals import AllenRelation, allen_relation, atomic_intervals, is_covered
from .plan import PlanOperation

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .contracts import Payload
    from .intervals import Interval
    from .records import SourceRecord, TargetSlice
    from .resolve import EntityGroup, EntityRef
    from .template import MergeTemplate

log = logging.getLogger(__name__)


class PlanningError(ValueError):
    """Entity-scoped planning failure; reported on every row of the entity."""


def plan_entity(group: EntityGroup, template: MergeTemplate) -> list[PlanOperation]:
    """Plan all operations for one entity group."""

    mode = template.mode
    ref = group.ref
    if not group.records:
        if template.delete_mode.deletes_entities:
            return [_delete(ref, target_slice, ()) for target_slice in group.slices]
        return []

    if mode.is_for_portion_of and not group.slices:
        return [
            _row_outcome(PlanAction.SKIP_NO_TARGET, ref, record, "Target entity does not exist")
            for record in group.records
        ]

    active, eclipsed = split_eclipsed(group.records)
    operations = [
        _row_outcome(
            PlanAction.SKIP_ECLIPSED,
            ref,
            record,
            f"Eclipsed by later source rows: {list(by)!r}",
        )
        for record, by in eclipsed
    ]

    try:
        if not mode.tolerates_layered_sources:
            _reject_overlaps(active, mode)
        segments = _build_segments(group, active, template)
        _inherit_required(segments, group.slices, active, template)
    except PlanningError as exc:
        log.debug("Planning failed for %s: %s", ref.group_key, exc)
        operations.extend(
            _row_outcome(PlanAction.ERROR, ref, record, str(exc)) for record in active
        )
        return operations

    coalesced = coalesce_segments(segments, keep_existing=mode is MergeMode.INSERT_ONLY)
    if mode is MergeMode.INSERT_ONLY:
        operations.extend(_diff_insert_only(coalesced, group))
    else:
        operations.extend(_diff(coalesced, group, active))

    if mode.is_for_portion_of:
        touched = {row_id for operation in operations for row_id in operation.row_ids}
        operations.extend(
            _row_outcome(
                PlanAction.SKIP_NO_TARGET,
                ref,
                record,
                "Source row does not overlap the existing timeline",
            )
            for record in active
            if record.row_id not in touched
        )

    if template.era.valid_to_column is not None:
        for operation in operations:
            if operation.action in {PlanAction.INSERT, PlanAction.UPDATE}:
                operation.ephemeral[template.era.valid_to_column] = derive_valid_to(
                    operation.new_valid_until
                )
    return operations


def split_eclipsed(
    records: Sequence[SourceRecord],
) -> tuple[list[SourceRecord], list[tuple[SourceRecord, tuple[object, ...]]]]:
    """Separate rows fully covered by later rows of the same entity."""

    ordered = sorted(records, key=lambda record: record.ordinal)
    active: list[SourceRecord] = []
    eclipsed: list[tuple[SourceRecord, tuple[object, ...]]] = []
    for index, record in enumerate(ordered):
        later = [
            other
            for other in ordered[index + 1 :]
            if other.interval.overlaps(record.interval)
        ]
        if later and is_covered(record.interval, [other.interval for other in later]):
            eclipsed.append((record, tuple(other.row_id for other in later)))
        else:
            active.append(record)
    return active, eclipsed


def _reject_overlaps(records: Sequence[SourceRecord], mode: MergeMode) -> None:
    ordered = sorted(records, key=lambda record: record.valid_from)
    overlapping: dict[object, None] = {}
    for index, record in enumerate(ordered):
        for other in ordered[index + 1 :]:
            if other.valid_from >= record.valid_until:
                break
            overlapping[record.row_id] = None
            overlapping[other.row_id] = None
    if overlapping:
        raise PlanningError(
            f"Source rows {list(overlapping)!r} overlap in time for the same entity, "
            f"which mode {mode.value!r} cannot reconcile"
        )


def _causal_rows(target_slice: TargetSlice, records: Sequence[SourceRecord]) -> tuple[object, ...]:
    return tuple(
        record.row_id for record in records if record.interval.overlaps(target_slice.interval)
    )


def _merge_payload(
    target_slice: TargetSlice | None,
    sources: Sequence[SourceRecord],
    template: MergeTemplate,
) -> tuple[Payload, Payload]:
    data: Payload = dict(target_slice.data) if target_slice is not None else {}
    ephemeral: Payload = dict(target_slice.ephemeral) if target_slice is not None else {}
    writes_nulls = template.mode.is_replace
    for record in sources:
        for column, value in record.data.items():
            if value is None and (not writes_nulls or column in template.null_ignored_columns):
                continue
            data[column] = value
        for column, value in record.ephemeral.items():
            if value is None and not writes_nulls:
                continue
            ephemeral[column] = value
    return data, ephemeral


def _build_segments(
    group: EntityGroup,
    active: Sequence[SourceRecord],
    template: MergeTemplate,
) -> list[Segment]:
    mode = template.mode
    pieces = atomic_intervals(
        [*(record.interval for record in active), *(item.interval for item in group.slices)]
    )
    segments: list[Segment] = []
    for piece in pieces:
        target_slice = next((item for item in group.slices if item.interval.covers(piece)), None)
        sources = [record for record in active if record.interval.covers(piece)]
        if not sources:
            if target_slice is None or template.delete_mode.deletes_timeline:
                continue
            segments.append(
                Segment(
                    interval=piece,
                    data=dict(target_slice.data),
                    ephemeral=dict(target_slice.ephemeral),
                    row_ids=_causal_rows(target_slice, active),
                    target=target_slice,
                )
            )
            continue
        if target_slice is None and mode.is_for_portion_of:
            continue
        relation = (
            allen_relation(sources[-1].interval, target_slice.interval)
            if target_slice is not None
            else None
        )
        if target_slice is not None and mode is MergeMode.INSERT_ONLY:
            data, ephemeral = dict(target_slice.data), dict(target_slice.ephemeral)
        else:
            data, ephemeral = _merge_payload(target_slice, sources, template)
        segments.append(
            Segment(
                interval=piece,
                data=data,
                ephemeral=ephemeral,
                row_ids=tuple(record.row_id for record in sources),
                target=target_slice,
                sourced=True,
                source_relation=relation,
            )
        )
    return segments


def _nearest_value(
    column: str,
    segment: Segment,
    contributing: Sequence[SourceRecord],
    slices: Sequence[TargetSlice],
) -> object | None:
    candidates = [
        item
        for item in slices
        if item.data.get(column) is not None
        and any(record.interval.overlaps(item.interval) for record in contributing)
    ]
    if not candidates:
        return None
    for item in candidates:
        if item.interval.overlaps(segment.interval):
            return item.data[column]
    preceding = [item for item in candidates if item.valid_until <= segment.interval.start]
    if preceding:
        return max(preceding, key=lambda item: item.valid_until).data[column]
    following = min(candidates, key=lambda item: item.valid_from)
    return following.data[column]


def _inherit_required(
    segments: Sequence[Segment],
    slices: Sequence[TargetSlice],
    active: Sequence[SourceRecord],
    template: MergeTemplate,
) -> None:
    """Fill NOT NULL attributes the source left empty from existing slices."""

    for segment in segments:
        if not segment.sourced:
            continue
        missing = [
            column for column in template.required_columns if segment.data.get(column) is None
        ]
        if not missing:
            continue
        contributing = [record for record in active if record.row_id in segment.row_ids]
        for column in missing:
            value = _nearest_value(column, segment, contributing, slices)
            if value is None:
                raise PlanningError(
                    f"Missing value for NOT NULL column {column!r} in "
                    f"[{segment.interval.start}, {segment.interval.end}) and no existing "
                    "slice to inherit it from"
                )
            segment.data[column] = value


def _update_effect(new: Interval, old: Interval) -> UpdateEffect:
    if new == old:
        return UpdateEffect.NONE
    if old.covers(new):
        return UpdateEffect.SHRINK
    if new.covers(old):
        return UpdateEffect.GROW
    return UpdateEffect.MOVE


def _insert(
    ref: EntityRef,
    segment: Segment,
    *,
    relation: AllenRelation | None = None,
) -> PlanOperation:
    return PlanOperation(
        action=PlanAction.INSERT,
        entity=ref,
        row_ids=segment.row_ids,
        new_valid_from=segment.interval.start,
        new_valid_until=segment.interval.end,
        data=dict(segment.data),
        ephemeral=dict(segment.ephemeral),
        relation=relation,
        source_relation=segment.source_relation,
    )


def _delete(
    ref: EntityRef, target_slice: TargetSlice, row_ids: tuple[object, ...]
) -> PlanOperation:
    return PlanOperation(
        action=PlanAction.DELETE,
        entity=ref,
        row_ids=row_ids,
        old_valid_from=target_slice.valid_from,
        old_valid_until=target_slice.valid_until,
    )


def _row_outcome(
    action: PlanAction,
    ref: EntityRef,
    record: SourceRecord,
    message: str,
) -> PlanOperation:
    return PlanOperation(
        action=action,
        entity=ref,
        row_ids=(record.row_id,),
        new_valid_from=record.valid_from,
        new_valid_until=record.valid_until,
        message=message,
    )


def _diff(
    segments: Sequence[Segment],
    group: EntityGroup,
    active: Sequence[SourceRecord],
) -> list[PlanOperation]:
    ref = group.ref
    operations: list[PlanOperation] = []
    by_ancestor: dict[object, list[Segment]] = {}
    for segment in segments:
        if segment.ancestor is None:
            operations.append(_insert(ref, segment))
            continue
        by_ancestor.setdefault(segment.ancestor.valid_from, []).append(segment)

    for target_slice in group.slices:
        candidates = by_ancestor.get(target_slice.valid_from)
        if not candidates:
            operations.append(_delete(ref, target_slice, _causal_rows(target_slice, active)))
            continue
        primary, *rest = sorted(
            candidates,
            key=lambda segment: (
                segment.interval.start != target_slice.valid_from,
                not payloads_equal(segment.data, target_slice.data),
                segment.interval.start,
            ),
        )
        relation = allen_relation(primary.interval, target_slice.interval)
        identical = primary.interval == target_slice.interval and payloads_equal(
            primary.data, target_slice.data
        )
        if identical:
            if primary.sourced:
                operations.append(
                    PlanOperation(
                        action=PlanAction.SKIP_IDENTICAL,
                        entity=ref,
                        row_ids=primary.row_ids,
                        old_valid_from=target_slice.valid_from,
                        old_valid_until=target_slice.valid_until,
                        new_valid_from=primary.interval.start,
                        new_valid_until=primary.interval.end,
                        relation=relation,
                        source_relation=primary.source_relation,
                    )
                )
        else:
            operations.append(
                PlanOperation(
                    action=PlanAction.UPDATE,
                    entity=ref,
                    row_ids=primary.row_ids,
                    old_valid_from=target_slice.valid_from,
                    old_valid_until=target_slice.valid_until,
                    new_valid_from=primary.interval.start,
                    new_valid_until=primary.interval.end,
                    data=dict(primary.data),
                    ephemeral=dict(primary.ephemeral),
                    update_effect=_update_effect(primary.interval, target_slice.interval),
                    relation=relation,
                    source_relation=primary.source_relation,
                )
            )
        for segment in rest:
            relation = allen_relation(segment.interval, target_slice.interval)
            operations.append(_insert(ref, segment, relation=relation))
    return operations


def _diff_insert_only(segments: Sequence[Segment], group: EntityGroup) -> list[PlanOperation]:
    """Insert uncovered time only; covered time is reported as identical."""

    ref = group.ref
    operations: list[PlanOperation] = []
    covered: dict[object, list[Segment]] = {}
    for segment in segments:
        if segment.ancestor is None:
            operations.append(_insert(ref, segment))
        elif segment.sourced:
            covered.setdefault(segment.ancestor.valid_from, []).append(segment)
    for target_slice in group.slices:
        touching = covered.get(target_slice.valid_from)
        if not touching:
            continue
        row_ids = tuple(
            dict.fromkeys(row_id for segment in touching for row_id in segment.row_ids)
        )
        operations.append(
            PlanOperation(
                action=PlanAction.SKIP_IDENTICAL,
                entity=ref,
                row_ids=row_ids,
                old_valid_from=target_slice.valid_from,
                old_valid_until=target_slice.valid_until,
                new_valid_from=target_slice.valid_from,
                new_valid_until=target_slice.valid_until,
                relation=AllenRelation.EQUALS,
                source_relation=touching[0].source_relation,
            )
        )
    return operations

"""Identity resolution: decide which entity every source row belongs to.

A row resolves to an existing entity (by primary identity or natural key),
to a pending new entity (caller-supplied identity, founding group or shared
natural key), or fails. Pending entities live in a ``FoundingArena``; rows
and plan operations refer to them by slot until execution assigns the
generated identity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from .errors import IdentityConflictError
from .records import RecordError, key_of

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping, Sequence

    from .contracts import Identity
    from .records import SourceRecord, TargetSlice
    from .template import MergeTemplate

log = logging.getLogger(__name__)

type EntityKey = tuple[object, ...]


class ResolutionStatus(StrEnum):
    EXISTING = "existing"
    NEW_IDENTITY = "new_identity"
    FOUNDING = "founding"
    NATURAL = "natural"
    FAILED = "failed"


@dataclass(slots=True, kw_only=True)
class PendingEntity:
    """A new entity whose identity may only be known after execution."""

    slot: int
    founding_key: str
    identity: Identity = field(default_factory=dict["str", "object"])
    natural: dict[str, object] = field(default_factory=dict["str", "object"])

    @property
    def has_identity(self) -> bool:
        return bool(self.identity) and all(value is not None for value in self.identity.values())


class FoundingArena:
    """Slots for pending entities, indexed by founding key."""

    def __init__(self) -> None:
        self._slots: list[PendingEntity] = []
        self._by_key: dict[str, int] = {}

    def claim(self, founding_key: str, *, identity: Identity | None = None) -> PendingEntity:
        slot = self._by_key.get(founding_key)
        if slot is not None:
            return self._slots[slot]
        pending = PendingEntity(
            slot=len(self._slots),
            founding_key=founding_key,
            identity=dict(identity or {}),
        )
        self._slots.append(pending)
        self._by_key[founding_key] = pending.slot
        return pending

    def __getitem__(self, slot: int) -> PendingEntity:
        return self._slots[slot]

    def __iter__(self) -> Iterator[PendingEntity]:
        return iter(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def assign(self, slot: int, identity: Mapping[str, object]) -> None:
        self._slots[slot].identity.update(identity)

    def forget(self, slot: int, columns: Iterable[str]) -> None:
        """Drop generated identity values, e.g. after the founding insert rolled back."""

        for column in columns:
            self._slots[slot].identity.pop(column, None)


@dataclass(frozen=True, slots=True, kw_only=True)
class EntityRef:
    group_key: str
    identity: tuple[tuple[str, object], ...] = ()
    natural: tuple[tuple[str, object], ...] = ()
    slot: int | None = None

    @property
    def is_new(self) -> bool:
        return self.slot is not None

    def resolved_identity(self, arena: FoundingArena) -> Identity | None:
        if self.slot is None:
            return dict(self.identity)
        pending = arena[self.slot]
        return dict(pending.identity) if pending.has_identity else None


@dataclass(slots=True, kw_only=True)
class EntityGroup:
    ref: EntityRef
    records: list[SourceRecord] = field(default_factory=list["SourceRecord"])
    slices: list[TargetSlice] = field(default_factory=list["TargetSlice"])


@dataclass(slots=True, kw_only=True)
class Resolution:
    groups: list[EntityGroup] = field(default_factory=list[EntityGroup])
    failures: list[RecordError] = field(default_factory=list[RecordError])
    arena: FoundingArena = field(default_factory=FoundingArena)
    group_by_row: dict[object, str] = field(default_factory=dict["object", "str"])


@dataclass(slots=True)
class _Outcome:
    status: ResolutionStatus
    key: Any = None
    message: str | None = None


class _NaturalKeyUnion:
    """Union-find over natural-key values of rows founding new entities."""

    def __init__(self) -> None:
        self._parent: dict[tuple[int, EntityKey], tuple[int, EntityKey]] = {}
        self._order: dict[tuple[int, EntityKey], int] = {}

    def _find(self, node: tuple[int, EntityKey]) -> tuple[int, EntityKey]:
        self._parent.setdefault(node, node)
        self._order.setdefault(node, len(self._order))
        root = node
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[node] != root:
            self._parent[node], node = root, self._parent[node]
        return root

    def union(self, nodes: Sequence[tuple[int, EntityKey]]) -> None:
        roots = [self._find(node) for node in nodes]
        canonical = min(roots, key=self._order.__getitem__)
        for root in roots:
            self._parent[root] = canonical

    def canonical(self, node: tuple[int, EntityKey]) -> tuple[int, EntityKey]:
        return self._find(node)


def _natural_nodes(
    record: SourceRecord, template: MergeTemplate
) -> list[tuple[int, EntityKey]]:
    nodes: list[tuple[int, EntityKey]] = []
    for index, key_set in enumerate(template.natural_key_sets):
        key = key_of(record.natural, key_set)
        if key is not None:
            nodes.append((index, key))
    return nodes


def _lookup(
    nodes: Iterable[tuple[int, EntityKey]],
    index: Mapping[tuple[int, EntityKey], set[EntityKey]],
) -> set[EntityKey]:
    matches: set[EntityKey] = set()
    for node in nodes:
        matches |= index.get(node, set())
    return matches


def _describe(keys: Iterable[EntityKey]) -> str:
    return ", ".join(repr(key) for key in sorted(keys, key=repr))


def resolve_identities(
    records: Sequence[SourceRecord],
    slices: Iterable[TargetSlice],
    template: MergeTemplate,
    *,
    include_unmatched_targets: bool = False,
) -> Resolution:
    """Assign every record to an entity group.

    Raises ``IdentityConflictError`` when a row's supplied identity disagrees
    with the entity its natural key matches.
    """

    entity_columns = template.entity_columns
    slices_by_entity: dict[EntityKey, list[TargetSlice]] = {}
    for target_slice in slices:
        key = key_of(target_slice.identity, entity_columns)
        if key is None:
            log.warning("Ignoring target slice without entity identity: %s", target_slice)
            continue
        slices_by_entity.setdefault(key, []).append(target_slice)

    existing_index: dict[tuple[int, EntityKey], set[EntityKey]] = {}
    for key, entity_slices in slices_by_entity.items():
        for target_slice in entity_slices:
            for index, key_set in enumerate(template.natural_key_sets):
                natural = key_of(target_slice.natural, key_set)
                if natural is not None:
                    existing_index.setdefault((index, natural), set()).add(key)

    outcomes: dict[object, _Outcome] = {}
    new_index: dict[tuple[int, EntityKey], set[EntityKey]] = {}

    for record in records:
        key = key_of(record.identity, entity_columns)
        if key is None:
            continue
        nodes = _natural_nodes(record, template)
        conflicting = _lookup(nodes, existing_index) - {key}
        if conflicting:
            raise IdentityConflictError(
                f"Source row {record.row_id!r} supplies identity {key!r} but its natural key "
                f"matches a different entity: {_describe(conflicting)}"
            )
        if key in slices_by_entity:
            outcomes[record.row_id] = _Outcome(ResolutionStatus.EXISTING, key)
            continue
        outcomes[record.row_id] = _Outcome(ResolutionStatus.NEW_IDENTITY, key)
        for node in nodes:
            new_index.setdefault(node, set()).add(key)

    naturals = _NaturalKeyUnion()
    for record in records:
        if record.row_id in outcomes:
            continue
        nodes = _natural_nodes(record, template)
        existing = _lookup(nodes, existing_index)
        if len(existing) > 1:
            outcomes[record.row_id] = _Outcome(
                ResolutionStatus.FAILED,
                message=(
                    "Source row is ambiguous. It matches multiple distinct target entities: "
                    f"[{_describe(existing)}]"
                ),
            )
            continue
        if existing:
            outcomes[record.row_id] = _Outcome(ResolutionStatus.EXISTING, next(iter(existing)))
            continue
        pending = _lookup(nodes, new_index)
        if len(pending) > 1:
            outcomes[record.row_id] = _Outcome(
                ResolutionStatus.FAILED,
                message=(
                    "Source row is ambiguous. It matches multiple new entities in this batch: "
                    f"[{_describe(pending)}]"
                ),
            )
            continue
        if pending:
            outcomes[record.row_id] = _Outcome(
                ResolutionStatus.NEW_IDENTITY, next(iter(pending))
            )
            continue
        if not template.identity_columns and (record.founding_id is not None or nodes):
            outcomes[record.row_id] = _Outcome(
                ResolutionStatus.FAILED,
                message=(
                    "Source row cannot found a new entity without values for: "
                    f"{', '.join(entity_columns)}"
                ),
            )
            continue
        if record.founding_id is not None:
            outcomes[record.row_id] = _Outcome(ResolutionStatus.FOUNDING, record.founding_id)
            continue
        if nodes:
            naturals.union(nodes)
            outcomes[record.row_id] = _Outcome(ResolutionStatus.NATURAL, nodes[0])
            continue
        outcomes[record.row_id] = _Outcome(
            ResolutionStatus.FAILED,
            message=(
                "Source row is unidentifiable. It has no identity, no natural key and no "
                "founding value"
            ),
        )

    _consolidate_founding_groups(records, outcomes, template)

    resolution = Resolution()
    members: dict[str, list[SourceRecord]] = {}
    statuses: dict[str, _Outcome] = {}
    for record in records:
        outcome = outcomes[record.row_id]
        if outcome.status is ResolutionStatus.FAILED:
            resolution.failures.append(
                RecordError(record.row_id, record.ordinal, outcome.message or "Unresolved")
            )
            continue
        if outcome.status is ResolutionStatus.NATURAL:
            group_key = f"natural:{naturals.canonical(outcome.key)!r}"
        else:
            group_key = f"{outcome.status.value}:{outcome.key!r}"
        members.setdefault(group_key, []).append(record)
        statuses.setdefault(group_key, outcome)
        resolution.group_by_row[record.row_id] = group_key

    for group_key, group_records in members.items():
        outcome = statuses[group_key]
        natural = _merged_natural(group_records)
        if outcome.status is ResolutionStatus.EXISTING:
            entity_slices = sorted(
                slices_by_entity[outcome.key],
                key=lambda item: item.valid_from,
            )
            ref = EntityRef(
                group_key=group_key,
                identity=tuple(zip(entity_columns, outcome.key, strict=True)),
                natural=tuple(sorted(entity_slices[0].natural.items())),
            )
            resolution.groups.append(
                EntityGroup(ref=ref, records=group_records, slices=entity_slices)
            )
            continue
        identity = (
            dict(zip(entity_columns, outcome.key, strict=True))
            if outcome.status is ResolutionStatus.NEW_IDENTITY
            else None
        )
        pending = resolution.arena.claim(group_key, identity=identity)
        pending.natural.update(natural)
        ref = EntityRef(
            group_key=group_key,
            identity=tuple(identity.items()) if identity else (),
            natural=tuple(sorted(natural.items())),
            slot=pending.slot,
        )
        resolution.groups.append(EntityGroup(ref=ref, records=group_records))

    if include_unmatched_targets:
        matched = {
            outcome.key
            for outcome in outcomes.values()
            if outcome.status is ResolutionStatus.EXISTING
        }
        for key, entity_slices in slices_by_entity.items():
            if key in matched:
                continue
            ordered = sorted(entity_slices, key=lambda item: item.valid_from)
            ref = EntityRef(
                group_key=f"{ResolutionStatus.EXISTING.value}:{key!r}",
                identity=tuple(zip(entity_columns, key, strict=True)),
                natural=tuple(sorted(ordered[0].natural.items())),
            )
            resolution.groups.append(EntityGroup(ref=ref, slices=ordered))

    log.debug(
        "Resolved %d rows into %d entities (%d pending, %d failed)",
        len(records),
        len(resolution.groups),
        len(resolution.arena),
        len(resolution.failures),
    )
    return resolution


def _consolidate_founding_groups(
    records: Sequence[SourceRecord],
    outcomes: dict[object, _Outcome],
    template: MergeTemplate,
) -> None:
    """Make every row of a founding group resolve to the same entity."""

    by_founding: dict[object, list[SourceRecord]] = {}
    for record in records:
        if record.founding_id is None or key_of(record.identity, template.entity_columns):
            continue
        if outcomes[record.row_id].status is ResolutionStatus.FAILED:
            continue
        by_founding.setdefault(record.founding_id, []).append(record)

    for founding_id, group in by_founding.items():
        resolved = {
            (outcomes[record.row_id].status, outcomes[record.row_id].key)
            for record in group
            if outcomes[record.row_id].status
            in {ResolutionStatus.EXISTING, ResolutionStatus.NEW_IDENTITY}
        }
        if not resolved:
            continue
        if len(resolved) > 1:
            message = (
                f"Founding group {founding_id!r} resolves to multiple entities: "
                f"[{_describe(key for _status, key in resolved)}]"
            )
            for record in group:
                outcomes[record.row_id] = _Outcome(ResolutionStatus.FAILED, message=message)
            continue
        status, key = next(iter(resolved))
        for record in group:
            outcomes[record.row_id] = _Outcome(status, key)


def _merged_natural(records: Iterable[SourceRecord]) -> dict[str, object]:
    merged: dict[str, object] = {}
    for record in records:
        for column, value in record.natural.items():
            if value is not None and merged.get(column) is None:
                merged[column] = value
    return merged

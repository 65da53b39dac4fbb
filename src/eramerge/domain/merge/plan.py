"""Plan operations and the inspectable plan of one merge call."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .contracts import PlanAction, UpdateEffect

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .contracts import Identity, Payload
    from .intervals import AllenRelation, Bound
    from .resolve import EntityRef, FoundingArena


@dataclass(slots=True, kw_only=True)
class PlanOperation:
    """One planned statement (or no-op) against one entity's timeline."""

    action: PlanAction
    entity: EntityRef
    row_ids: tuple[object, ...] = ()
    old_valid_from: Bound = None
    old_valid_until: Bound = None
    new_valid_from: Bound = None
    new_valid_until: Bound = None
    data: Payload = field(default_factory=dict["str", "object"])
    ephemeral: Payload = field(default_factory=dict["str", "object"])
    update_effect: UpdateEffect | None = None
    relation: AllenRelation | None = None
    source_relation: AllenRelation | None = None
    message: str | None = None
    seq: int = 0
    statement_seq: int = 0

    @property
    def payload(self) -> Payload:
        return {**self.data, **self.ephemeral}


_STATEMENT_RANK: dict[tuple[PlanAction, UpdateEffect | None], int] = {
    (PlanAction.DELETE, None): 1,
    (PlanAction.UPDATE, UpdateEffect.NONE): 2,
    (PlanAction.UPDATE, UpdateEffect.SHRINK): 2,
    (PlanAction.UPDATE, UpdateEffect.MOVE): 3,
    (PlanAction.UPDATE, UpdateEffect.GROW): 4,
    (PlanAction.INSERT, None): 5,
}


def statement_rank(operation: PlanOperation) -> int:
    """Execution order within an entity; no-ops sort first and are never executed.

    Statements that free validity time run before statements that claim it.
    """

    return _STATEMENT_RANK.get((operation.action, operation.update_effect), 0)


def _order_key(operation: PlanOperation) -> tuple[int, Any, Any]:
    anchor = operation.new_valid_from
    if anchor is None:
        anchor = operation.old_valid_from
    return (statement_rank(operation), anchor is None, anchor)


@dataclass(slots=True)
class MergePlan:
    """All operations of one call, grouped by entity in execution order."""

    arena: FoundingArena
    operations: list[PlanOperation] = field(default_factory=list[PlanOperation])

    @classmethod
    def build(cls, arena: FoundingArena, entity_plans: Iterable[list[PlanOperation]]) -> MergePlan:
        plan = cls(arena=arena)
        seq = 0
        for operations in entity_plans:
            ordered = sorted(operations, key=_order_key)
            for statement_seq, operation in enumerate(ordered, start=1):
                seq += 1
                operation.seq = seq
                operation.statement_seq = statement_seq if operation.action.is_write else 0
                plan.operations.append(operation)
        return plan

    def by_entity(self) -> dict[str, list[PlanOperation]]:
        grouped: dict[str, list[PlanOperation]] = {}
        for operation in self.operations:
            grouped.setdefault(operation.entity.group_key, []).append(operation)
        return grouped

    def execution_order(self) -> list[list[PlanOperation]]:
        """Entity batches with new-identity-producing entities first."""

        batches = list(self.by_entity().values())
        return sorted(batches, key=lambda ops: not ops[0].entity.is_new)

    def identity_of(self, entity: EntityRef) -> Identity | None:
        return entity.resolved_identity(self.arena)

    def counts(self) -> Counter[PlanAction]:
        return Counter(operation.action for operation in self.operations)

    def to_rows(self) -> list[dict[str, object]]:
        """Flatten the plan for inspection, one mapping per operation."""

        rows: list[dict[str, object]] = []
        for operation in self.operations:
            rows.append(
                {
                    "plan_op_seq": operation.seq,
                    "statement_seq": operation.statement_seq,
                    "row_ids": list(operation.row_ids),
                    "operation": operation.action.value,
                    "update_effect": (
                        operation.update_effect.value if operation.update_effect else None
                    ),
                    "is_new_entity": operation.entity.is_new,
                    "entity_keys": self.identity_of(operation.entity),
                    "grouping_key": operation.entity.group_key,
                    "relation": operation.relation.value if operation.relation else None,
                    "source_relation": (
                        operation.source_relation.value if operation.source_relation else None
                    ),
                    "old_valid_from": operation.old_valid_from,
                    "old_valid_until": operation.old_valid_until,
                    "new_valid_from": operation.new_valid_from,
                    "new_valid_until": operation.new_valid_until,
                    "data": operation.payload or None,
                    "message": operation.message,
                }
            )
        return rows

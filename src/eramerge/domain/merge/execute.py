"""Apply a merge plan to the target timeline, one entity at a time."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .contracts import PlanAction
from .errors import TargetWriteError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from eramerge.domain.ports.persistence import TargetTimeline

    from .contracts import Identity
    from .plan import MergePlan, PlanOperation
    from .template import MergeTemplate

log = logging.getLogger(__name__)


@dataclass(slots=True, kw_only=True)
class ExecutionResult:
    """Outcome of executing a plan.

    ``failures`` maps entity group keys to the error that rolled back that
    entity's writes.
    """

    failures: dict[str, str] = field(default_factory=dict["str", "str"])
    statements: int = 0
    generated: dict[int, Identity] = field(default_factory=dict["int", "Identity"])


def execute_plan(
    plan: MergePlan,
    target: TargetTimeline,
    template: MergeTemplate,
) -> ExecutionResult:
    """Run every write of ``plan`` against ``target``.

    Each entity runs inside its own ``entity_scope``; a failure rolls back
    that entity only and is recorded in the result instead of being raised.
    """

    result = ExecutionResult()
    for operations in plan.execution_order():
        writes = [operation for operation in operations if operation.action.is_write]
        if not writes:
            continue
        entity = writes[0].entity
        try:
            with target.entity_scope():
                for operation in writes:
                    _apply(operation, plan, target, template, result)
                    result.statements += 1
        except TargetWriteError as exc:
            log.warning("Writes for %s rolled back: %s", entity.group_key, exc)
            result.failures[entity.group_key] = str(exc)
            if entity.slot is not None and entity.slot in result.generated:
                plan.arena.forget(entity.slot, result.generated.pop(entity.slot))
    log.debug(
        "Executed %d statements, %d entities failed", result.statements, len(result.failures)
    )
    return result


def _identity_for(
    operation: PlanOperation,
    plan: MergePlan,
    template: MergeTemplate,
) -> Identity | None:
    identity = plan.identity_of(operation.entity)
    if identity is None and not template.generates_identity:
        raise TargetWriteError(
            f"No identity available for entity {operation.entity.group_key}"
        )
    return identity


def _era_values(operation: PlanOperation, template: MergeTemplate) -> dict[str, object]:
    return {
        template.era.valid_from_column: operation.new_valid_from,
        template.era.valid_until_column: operation.new_valid_until,
    }


def _slice_key(
    identity: Identity, operation: PlanOperation, template: MergeTemplate
) -> dict[str, object]:
    return {**identity, template.era.valid_from_column: operation.old_valid_from}


def _apply(
    operation: PlanOperation,
    plan: MergePlan,
    target: TargetTimeline,
    template: MergeTemplate,
    result: ExecutionResult,
) -> None:
    identity = _identity_for(operation, plan, template)
    if operation.action is PlanAction.INSERT:
        values: dict[str, object] = dict(operation.entity.natural)
        values.update(operation.payload)
        values.update(_era_values(operation, template))
        if identity is not None:
            values.update(identity)
            target.insert(values)
            return
        generate: Sequence[str] = template.identity_columns
        generated = target.insert(values, generate=generate)
        missing = [column for column in generate if generated.get(column) is None]
        if missing:
            raise TargetWriteError(
                f"Target {target.name!r} did not generate values for {', '.join(missing)}"
            )
        slot = operation.entity.slot
        if slot is None:
            raise TargetWriteError(f"Entity {operation.entity.group_key} has no identity")
        plan.arena.assign(slot, {column: generated[column] for column in generate})
        result.generated[slot] = {column: generated[column] for column in generate}
        log.debug("Founded %s as %s", operation.entity.group_key, result.generated[slot])
        return

    if identity is None:
        raise TargetWriteError(
            f"Cannot {operation.action.value} a slice of unresolved entity "
            f"{operation.entity.group_key}"
        )
    if operation.action is PlanAction.UPDATE:
        values = dict(operation.payload)
        values.update(_era_values(operation, template))
        target.update(_slice_key(identity, operation, template), values)
    elif operation.action is PlanAction.DELETE:
        target.delete(_slice_key(identity, operation, template))

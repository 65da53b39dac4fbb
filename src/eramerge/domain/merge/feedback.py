"""Per-source-row feedback for a merge call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .contracts import FeedbackStatus, PlanAction

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from .contracts import Identity
    from .execute import ExecutionResult
    from .plan import MergePlan, PlanOperation
    from .records import RecordError

NO_PLAN_MESSAGE = "Planner failed to generate a plan for this source row."
ABORTED_MESSAGE = "Batch aborted, no changes applied."


@dataclass(frozen=True, slots=True, kw_only=True)
class FeedbackRecord:
    row_id: object
    status: FeedbackStatus
    entity_identities: tuple[Identity, ...] = ()
    error_message: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "row_id": self.row_id,
            "status": self.status.value,
            "target_entity_ids": [dict(identity) for identity in self.entity_identities],
            "error_message": self.error_message,
        }


_SKIP_STATUS: tuple[tuple[PlanAction, FeedbackStatus], ...] = (
    (PlanAction.SKIP_NO_TARGET, FeedbackStatus.SKIPPED_NO_TARGET),
    (PlanAction.SKIP_ECLIPSED, FeedbackStatus.SKIPPED_ECLIPSED),
    (PlanAction.SKIP_IDENTICAL, FeedbackStatus.SKIPPED_IDENTICAL),
)


def _identities(operations: Iterable[PlanOperation], plan: MergePlan) -> tuple[Identity, ...]:
    seen: list[Identity] = []
    for operation in operations:
        identity = plan.identity_of(operation.entity)
        if identity is not None and identity not in seen:
            seen.append(identity)
    return tuple(seen)


def _row_feedback(
    row_id: object,
    operations: Sequence[PlanOperation],
    plan: MergePlan,
    execution: ExecutionResult,
) -> FeedbackRecord:
    if not operations:
        return FeedbackRecord(
            row_id=row_id, status=FeedbackStatus.ERROR, error_message=NO_PLAN_MESSAGE
        )

    errors = [operation.message for operation in operations if operation.action is PlanAction.ERROR]
    errors.extend(
        execution.failures[operation.entity.group_key]
        for operation in operations
        if operation.entity.group_key in execution.failures
    )
    identities = _identities(operations, plan)
    if errors:
        message = "; ".join(dict.fromkeys(error for error in errors if error))
        return FeedbackRecord(
            row_id=row_id,
            status=FeedbackStatus.ERROR,
            entity_identities=identities,
            error_message=message or None,
        )
    if any(operation.action.is_write for operation in operations):
        return FeedbackRecord(
            row_id=row_id, status=FeedbackStatus.APPLIED, entity_identities=identities
        )
    actions = {operation.action for operation in operations}
    for action, status in _SKIP_STATUS:
        if action in actions:
            return FeedbackRecord(row_id=row_id, status=status, entity_identities=identities)
    return FeedbackRecord(row_id=row_id, status=FeedbackStatus.ERROR, error_message=NO_PLAN_MESSAGE)


def build_feedback(
    row_ids: Sequence[object],
    plan: MergePlan,
    execution: ExecutionResult,
    *,
    failures: Iterable[RecordError] = (),
) -> list[FeedbackRecord]:
    """Return one record per source row, in batch order.

    Rows that failed parsing or identity resolution report their own error;
    the others are classified from the plan operations that carry their row
    id, most severe outcome first.
    """

    failed = {failure.row_id: failure.message for failure in failures}
    by_row: dict[object, list[PlanOperation]] = {}
    for operation in plan.operations:
        for row_id in operation.row_ids:
            by_row.setdefault(row_id, []).append(operation)

    feedback: list[FeedbackRecord] = []
    for row_id in row_ids:
        if row_id in failed:
            feedback.append(
                FeedbackRecord(
                    row_id=row_id, status=FeedbackStatus.ERROR, error_message=failed[row_id]
                )
            )
            continue
        feedback.append(_row_feedback(row_id, by_row.get(row_id, []), plan, execution))
    return feedback


def abort_feedback(feedback: Iterable[FeedbackRecord]) -> list[FeedbackRecord]:
    """Mark every row of an aborted batch as failed, keeping existing errors."""

    return [
        record
        if record.status is FeedbackStatus.ERROR
        else FeedbackRecord(
            row_id=record.row_id,
            status=FeedbackStatus.ERROR,
            error_message=ABORTED_MESSAGE,
        )
        for record in feedback
    ]

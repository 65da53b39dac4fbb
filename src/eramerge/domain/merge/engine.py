"""Orchestrator for one temporal merge call.

The engine composes the stages (template, parsing, identity resolution,
planning, execution, feedback) over the target and source ports. It never
commits; the caller's unit of work owns the transaction.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from eramerge.domain.ports.persistence import SliceQuery

from .cache import PlanCache
from .contracts import FeedbackStatus, PlanAction
from .eras import EraCatalog, StaticEraCatalog
from .errors import MergeAbortedError
from .execute import ExecutionResult, execute_plan
from .feedback import FeedbackRecord, abort_feedback, build_feedback
from .plan import MergePlan
from .planner import plan_entity
from .records import key_of, parse_source_rows, parse_target_row
from .resolve import resolve_identities
from .template import build_template, source_signature

if TYPE_CHECKING:
    from collections.abc import Sequence

    from eramerge.domain.ports.persistence import SourceRowset, TargetTimeline

    from .contracts import MergeRequest
    from .records import RecordError, SourceRecord, TargetSlice
    from .resolve import Resolution
    from .template import MergeTemplate

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, kw_only=True)
class MergeResult:
    template: MergeTemplate
    plan: MergePlan
    feedback: tuple[FeedbackRecord, ...]

    def summary(self) -> dict[FeedbackStatus, int]:
        counts = Counter(record.status for record in self.feedback)
        return {status: counts[status] for status in FeedbackStatus if counts[status]}

    def feedback_for(self, row_id: object) -> FeedbackRecord | None:
        for record in self.feedback:
            if record.row_id == row_id:
                return record
        return None

    @property
    def has_errors(self) -> bool:
        return any(record.status is FeedbackStatus.ERROR for record in self.feedback)


@dataclass(slots=True)
class TemporalMergeEngine:
    """Run identity resolution, planning, execution and feedback for one batch."""

    cache: PlanCache = field(default_factory=PlanCache)
    eras: EraCatalog = field(default_factory=StaticEraCatalog)

    def merge(
        self,
        request: MergeRequest,
        *,
        target: TargetTimeline,
        source: SourceRowset,
    ) -> MergeResult:
        log.info(
            "Starting temporal merge: target=%s, source=%s, mode=%s",
            request.target,
            source.name,
            request.mode.value,
        )
        era = self.eras.era_for(request.target, request.era_name)
        source_schema = source.describe()
        template = self.cache.template_for(
            request,
            era=era,
            source_signature=source_signature(source_schema),
            build=lambda: build_template(
                request, era=era, target=target.describe(), source=source_schema
            ),
        )

        raw_rows = source.rows()
        records, record_errors = parse_source_rows(raw_rows, template)
        slices = load_slices(target, records, template)
        resolution = resolve_identities(
            records,
            slices,
            template,
            include_unmatched_targets=template.delete_mode.deletes_entities,
        )
        plan = MergePlan.build(
            resolution.arena,
            (plan_entity(group, template) for group in resolution.groups),
        )
        log.debug("Plan for %s: %s", request.target, plan.to_rows())

        row_ids = [row.get(template.row_id_column) for row in raw_rows]
        failures = [*record_errors, *resolution.failures]
        planned_errors = any(op.action is PlanAction.ERROR for op in plan.operations)
        if request.atomic and (failures or planned_errors):
            result = self._result(template, plan, row_ids, ExecutionResult(), failures)
            raise MergeAbortedError(
                "Temporal merge aborted before execution: "
                f"{self._error_count(result)} source rows failed planning",
                result=self._aborted(result),
            )

        execution = execute_plan(plan, target, template)
        result = self._result(template, plan, row_ids, execution, failures)
        if request.atomic and result.has_errors:
            raise MergeAbortedError(
                "Temporal merge aborted: "
                f"{self._error_count(result)} source rows failed execution",
                result=self._aborted(result),
            )

        if request.update_source_with_identity:
            backfill_identities(source, records, resolution, plan, template, execution)
        if request.update_source_with_feedback:
            write_feedback(source, result.feedback, template)

        log.info(
            "Finished temporal merge: target=%s, %s",
            request.target,
            ", ".join(f"{status.value}={count}" for status, count in result.summary().items())
            or "no rows",
        )
        return result

    @staticmethod
    def _result(
        template: MergeTemplate,
        plan: MergePlan,
        row_ids: Sequence[object],
        execution: ExecutionResult,
        failures: Sequence[RecordError],
    ) -> MergeResult:
        feedback = build_feedback(row_ids, plan, execution, failures=failures)
        return MergeResult(template=template, plan=plan, feedback=tuple(feedback))

    @staticmethod
    def _aborted(result: MergeResult) -> MergeResult:
        return replace(result, feedback=tuple(abort_feedback(result.feedback)))

    @staticmethod
    def _error_count(result: MergeResult) -> int:
        return result.summary().get(FeedbackStatus.ERROR, 0)


def load_slices(
    target: TargetTimeline,
    records: Sequence[SourceRecord],
    template: MergeTemplate,
) -> list[TargetSlice]:
    """Load the complete timelines of every entity the batch may touch."""

    if template.delete_mode.deletes_entities:
        return [parse_target_row(row, template) for row in target.load(None)]

    entity_columns = template.entity_columns
    queries: list[SliceQuery] = []
    identities = {
        key for record in records if (key := key_of(record.identity, entity_columns)) is not None
    }
    if identities:
        queries.append(SliceQuery(entity_columns, frozenset(identities)))
    for key_set in template.natural_key_sets:
        values = {
            key for record in records if (key := key_of(record.natural, key_set)) is not None
        }
        if values:
            queries.append(SliceQuery(key_set, frozenset(values)))
    if not queries:
        return []

    matched = {
        key
        for row in target.load(queries)
        if (key := key_of(row, entity_columns)) is not None
    }
    if not matched:
        return []
    rows = target.load([SliceQuery(entity_columns, frozenset(matched))])
    return [parse_target_row(row, template) for row in rows]


def backfill_identities(
    source: SourceRowset,
    records: Sequence[SourceRecord],
    resolution: Resolution,
    plan: MergePlan,
    template: MergeTemplate,
    execution: ExecutionResult,
) -> None:
    """Write resolved identities into source rows that arrived without one."""

    refs = {group.ref.group_key: group.ref for group in resolution.groups}
    updates: dict[object, dict[str, object]] = {}
    for record in records:
        if key_of(record.identity, template.identity_columns) is not None:
            continue
        group_key = resolution.group_by_row.get(record.row_id)
        if group_key is None or group_key in execution.failures:
            continue
        identity = plan.identity_of(refs[group_key])
        if identity is None:
            continue
        updates[record.row_id] = {
            column: identity[column]
            for column in template.source_identity_columns
            if column in identity
        }
    if updates:
        log.debug("Back-filling identities into %d source rows", len(updates))
        source.write_back(template.row_id_column, updates)


def write_feedback(
    source: SourceRowset,
    feedback: Sequence[FeedbackRecord],
    template: MergeTemplate,
) -> None:
    status_column = template.feedback_status_column
    if status_column is None:
        return
    updates: dict[object, dict[str, object]] = {}
    for record in feedback:
        if record.row_id is None:
            continue
        values: dict[str, object] = {status_column: record.status.value}
        if template.feedback_error_column is not None:
            values[template.feedback_error_column] = record.error_message
        updates[record.row_id] = values
    source.write_back(template.row_id_column, updates)

"""Source rows and target slices in the shape the planner works with."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .eras import derive_valid_to
from .intervals import Interval

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from .contracts import Identity, Payload
    from .intervals import Bound
    from .template import MergeTemplate


def key_of(values: Mapping[str, object], columns: Sequence[str]) -> tuple[object, ...] | None:
    """Return the values of ``columns`` as a tuple, or ``None`` if any is NULL."""

    key = tuple(values.get(column) for column in columns)
    if not columns or any(value is None for value in key):
        return None
    return key


@dataclass(frozen=True, slots=True, kw_only=True)
class SourceRecord:
    """One parsed source row."""

    row_id: object
    ordinal: int
    interval: Interval
    identity: Identity
    natural: dict[str, object]
    founding_id: object | None
    data: Payload
    ephemeral: Payload = field(default_factory=dict["str", "object"])

    @property
    def valid_from(self) -> Bound:
        return self.interval.start

    @property
    def valid_until(self) -> Bound:
        return self.interval.end


@dataclass(frozen=True, slots=True, kw_only=True)
class TargetSlice:
    """One pre-existing row of the target timeline."""

    identity: Identity
    natural: dict[str, object]
    interval: Interval
    data: Payload
    ephemeral: Payload = field(default_factory=dict["str", "object"])

    @property
    def valid_from(self) -> Bound:
        return self.interval.start

    @property
    def valid_until(self) -> Bound:
        return self.interval.end


@dataclass(frozen=True, slots=True)
class RecordError:
    row_id: object
    ordinal: int
    message: str


def parse_source_rows(
    rows: Iterable[Mapping[str, object]],
    template: MergeTemplate,
) -> tuple[list[SourceRecord], list[RecordError]]:
    """Split raw source mappings into column roles, collecting per-row errors."""

    era = template.era
    records: list[SourceRecord] = []
    errors: list[RecordError] = []
    batch = list(rows)
    counts = Counter(row.get(template.row_id_column) for row in batch)
    for ordinal, row in enumerate(batch):
        row_id = row.get(template.row_id_column)
        if row_id is None:
            errors.append(RecordError(row_id, ordinal, "Source row has no row id"))
            continue
        if counts[row_id] > 1:
            errors.append(RecordError(row_id, ordinal, f"Duplicate row id {row_id!r}"))
            continue
        try:
            interval = Interval(row.get(era.valid_from_column), row.get(era.valid_until_column))
        except (TypeError, ValueError) as exc:
            errors.append(RecordError(row_id, ordinal, f"Invalid validity period: {exc}"))
            continue
        if era.valid_to_column is not None:
            try:
                derive_valid_to(interval.end)
            except TypeError as exc:
                errors.append(RecordError(row_id, ordinal, str(exc)))
                continue
        records.append(
            SourceRecord(
                row_id=row_id,
                ordinal=ordinal,
                interval=interval,
                identity={column: row.get(column) for column in template.entity_columns},
                natural={column: row.get(column) for column in template.natural_columns},
                founding_id=(
                    row.get(template.founding_id_column)
                    if template.founding_id_column is not None
                    else None
                ),
                data={column: row.get(column) for column in template.source_data_columns},
                ephemeral={
                    column: row.get(column) for column in template.source_ephemeral_columns
                },
            )
        )
    return records, errors


def parse_target_row(row: Mapping[str, object], template: MergeTemplate) -> TargetSlice:
    era = template.era
    ephemeral = {
        column: row.get(column)
        for column in template.ephemeral_columns
        if column != era.valid_to_column
    }
    return TargetSlice(
        identity={column: row.get(column) for column in template.entity_columns},
        natural={column: row.get(column) for column in template.natural_columns},
        interval=Interval(row[era.valid_from_column], row[era.valid_until_column]),
        data={column: row.get(column) for column in template.data_columns},
        ephemeral=ephemeral,
    )

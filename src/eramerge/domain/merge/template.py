"""Column classification shared by every stage of one merge call.

A ``MergeTemplate`` is what the plan cache memoizes: it is derived from the
request, the era and both table schemas, and is valid for as long as the
source column signature and the target schema stay unchanged.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .contracts import DeleteMode, MergeMode
from .eras import Era
from .errors import MergeConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from .contracts import MergeRequest


@dataclass(frozen=True, slots=True, kw_only=True)
class ColumnInfo:
    name: str
    type_name: str = "ANY"
    nullable: bool = True
    has_default: bool = False
    generated: bool = False


@dataclass(frozen=True, slots=True, kw_only=True)
class TableSchema:
    name: str
    columns: tuple[ColumnInfo, ...]

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    def get(self, name: str) -> ColumnInfo | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def __contains__(self, name: object) -> bool:
        return any(column.name == name for column in self.columns)


def source_signature(schema: TableSchema) -> str:
    """Hash of the sorted ``name::type`` pairs of a source schema."""

    parts = sorted(f"{column.name}::{column.type_name}" for column in schema.columns)
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True, kw_only=True)
class MergeTemplate:
    """Resolved column roles for one (target, mode, source signature)."""

    target: str
    mode: MergeMode
    delete_mode: DeleteMode
    era: Era
    source_signature: str
    row_id_column: str
    founding_id_column: str | None
    identity_columns: tuple[str, ...]
    natural_key_sets: tuple[tuple[str, ...], ...]
    entity_columns: tuple[str, ...]
    data_columns: tuple[str, ...]
    source_data_columns: tuple[str, ...]
    ephemeral_columns: tuple[str, ...]
    source_ephemeral_columns: tuple[str, ...]
    required_columns: tuple[str, ...]
    null_ignored_columns: tuple[str, ...]
    generated_columns: tuple[str, ...]
    source_identity_columns: tuple[str, ...]
    feedback_status_column: str | None = None
    feedback_error_column: str | None = None

    @property
    def natural_columns(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for key_set in self.natural_key_sets:
            for column in key_set:
                seen.setdefault(column, None)
        return tuple(seen)

    @property
    def generates_identity(self) -> bool:
        return bool(self.identity_columns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "mode": self.mode.value,
            "delete_mode": self.delete_mode.value,
            "era": self.era.to_dict(),
            "source_signature": self.source_signature,
            "row_id_column": self.row_id_column,
            "founding_id_column": self.founding_id_column,
            "identity_columns": list(self.identity_columns),
            "natural_key_sets": [list(key_set) for key_set in self.natural_key_sets],
            "entity_columns": list(self.entity_columns),
            "data_columns": list(self.data_columns),
            "source_data_columns": list(self.source_data_columns),
            "ephemeral_columns": list(self.ephemeral_columns),
            "source_ephemeral_columns": list(self.source_ephemeral_columns),
            "required_columns": list(self.required_columns),
            "null_ignored_columns": list(self.null_ignored_columns),
            "generated_columns": list(self.generated_columns),
            "source_identity_columns": list(self.source_identity_columns),
            "feedback_status_column": self.feedback_status_column,
            "feedback_error_column": self.feedback_error_column,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> MergeTemplate:
        era = payload["era"]
        return cls(
            target=payload["target"],
            mode=MergeMode(payload["mode"]),
            delete_mode=DeleteMode(payload["delete_mode"]),
            era=Era(
                name=era["name"],
                valid_from_column=era["valid_from_column"],
                valid_until_column=era["valid_until_column"],
                valid_to_column=era["valid_to_column"],
            ),
            source_signature=payload["source_signature"],
            row_id_column=payload["row_id_column"],
            founding_id_column=payload["founding_id_column"],
            identity_columns=tuple(payload["identity_columns"]),
            natural_key_sets=tuple(tuple(key_set) for key_set in payload["natural_key_sets"]),
            entity_columns=tuple(payload["entity_columns"]),
            data_columns=tuple(payload["data_columns"]),
            source_data_columns=tuple(payload["source_data_columns"]),
            ephemeral_columns=tuple(payload["ephemeral_columns"]),
            source_ephemeral_columns=tuple(payload["source_ephemeral_columns"]),
            required_columns=tuple(payload["required_columns"]),
            null_ignored_columns=tuple(payload["null_ignored_columns"]),
            generated_columns=tuple(payload["generated_columns"]),
            source_identity_columns=tuple(payload["source_identity_columns"]),
            feedback_status_column=payload["feedback_status_column"],
            feedback_error_column=payload["feedback_error_column"],
        )


def _require_columns(schema: TableSchema, names: Iterable[str | None], *, role: str) -> None:
    unknown = sorted({name for name in names if name is not None and name not in schema})
    if unknown:
        raise MergeConfigurationError(
            f"Unknown {role} column(s) for table {schema.name!r}: {', '.join(unknown)}"
        )


def build_template(
    request: MergeRequest,
    *,
    era: Era,
    target: TableSchema,
    source: TableSchema,
) -> MergeTemplate:
    """Validate ``request`` against both schemas and classify every column."""

    _require_columns(target, request.identity_columns, role="identity")
    _require_columns(target, request.natural_columns, role="natural key")
    _require_columns(target, request.ephemeral_columns, role="ephemeral")
    _require_columns(target, era.columns, role="era")
    _require_columns(source, (era.valid_from_column, era.valid_until_column), role="era")
    _require_columns(source, (request.row_id_column,), role="row id")
    _require_columns(source, (request.founding_id_column,), role="founding id")
    _require_columns(
        source,
        (request.feedback_status_column, request.feedback_error_column),
        role="feedback",
    )
    if request.update_source_with_identity:
        _require_columns(source, request.identity_columns, role="identity back-fill")
    clashing = [name for name in request.ephemeral_columns if name in era.columns]
    if clashing:
        raise MergeConfigurationError(
            f"Era column(s) cannot be ephemeral: {', '.join(clashing)}"
        )

    structural = {
        *request.identity_columns,
        *request.natural_columns,
        *era.columns,
    }
    ephemeral = tuple(
        dict.fromkeys(
            [*request.ephemeral_columns]
            + ([era.valid_to_column] if era.valid_to_column is not None else [])
        )
    )
    generated = tuple(
        column.name
        for column in target.columns
        if column.name not in structural
        and column.name not in ephemeral
        and (column.generated or (column.has_default and column.name not in source))
    )
    data_columns = tuple(
        column.name
        for column in target.columns
        if column.name not in structural
        and column.name not in ephemeral
        and column.name not in generated
    )
    source_only = {
        request.row_id_column,
        request.founding_id_column,
        request.feedback_status_column,
        request.feedback_error_column,
    }
    source_data_columns = tuple(
        name for name in data_columns if name in source and name not in source_only
    )
    source_ephemeral_columns = tuple(
        name
        for name in ephemeral
        if name in source and name != era.valid_to_column and name not in source_only
    )
    required = tuple(
        name
        for name in data_columns
        if (info := target.get(name)) is not None and not info.nullable and not info.has_default
    )
    null_ignored = tuple(
        name
        for name in data_columns
        if (info := target.get(name)) is not None and (not info.nullable or info.has_default)
    )
    return MergeTemplate(
        target=target.name,
        mode=request.mode,
        delete_mode=request.delete_mode,
        era=era,
        source_signature=source_signature(source),
        row_id_column=request.row_id_column,
        founding_id_column=request.founding_id_column,
        identity_columns=request.identity_columns,
        natural_key_sets=request.natural_key_sets,
        entity_columns=request.entity_columns,
        data_columns=data_columns,
        source_data_columns=source_data_columns,
        ephemeral_columns=ephemeral,
        source_ephemeral_columns=source_ephemeral_columns,
        required_columns=required,
        null_ignored_columns=null_ignored,
        generated_columns=generated,
        source_identity_columns=tuple(
            name for name in request.identity_columns if name in source
        ),
        feedback_status_column=request.feedback_status_column,
        feedback_error_column=request.feedback_error_column,
    )

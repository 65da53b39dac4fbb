"""Closed enumerations and the invocation contract of a temporal merge."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from .errors import MergeConfigurationError

if TYPE_CHECKING:
    from collections.abc import Sequence

type Payload = dict[str, object]
type Identity = dict[str, object]

DEFAULT_ERA_NAME = "valid"
DEFAULT_ROW_ID_COLUMN = "row_id"


class MergeMode(StrEnum):
    ENTITY_PATCH = "entity_patch"
    ENTITY_REPLACE = "entity_replace"
    PATCH_FOR_PORTION_OF = "patch_for_portion_of"
    REPLACE_FOR_PORTION_OF = "replace_for_portion_of"
    INSERT_ONLY = "insert_only"

    @property
    def is_patch(self) -> bool:
        return self in {MergeMode.ENTITY_PATCH, MergeMode.PATCH_FOR_PORTION_OF}

    @property
    def is_replace(self) -> bool:
        return self in {MergeMode.ENTITY_REPLACE, MergeMode.REPLACE_FOR_PORTION_OF}

    @property
    def is_for_portion_of(self) -> bool:
        return self in {MergeMode.PATCH_FOR_PORTION_OF, MergeMode.REPLACE_FOR_PORTION_OF}

    @property
    def is_entity_scoped(self) -> bool:
        return self in {MergeMode.ENTITY_PATCH, MergeMode.ENTITY_REPLACE}

    @property
    def tolerates_layered_sources(self) -> bool:
        """Whether overlapping source rows for one entity are layered in batch order."""

        return self.is_patch


class DeleteMode(StrEnum):
    NONE = "none"
    DELETE_MISSING_TIMELINE = "delete_missing_timeline"
    DELETE_MISSING_ENTITIES = "delete_missing_entities"
    DELETE_MISSING_TIMELINE_AND_ENTITIES = "delete_missing_timeline_and_entities"

    @property
    def deletes_timeline(self) -> bool:
        return self in {
            DeleteMode.DELETE_MISSING_TIMELINE,
            DeleteMode.DELETE_MISSING_TIMELINE_AND_ENTITIES,
        }

    @property
    def deletes_entities(self) -> bool:
        return self in {
            DeleteMode.DELETE_MISSING_ENTITIES,
            DeleteMode.DELETE_MISSING_TIMELINE_AND_ENTITIES,
        }


class PlanAction(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    SKIP_IDENTICAL = "skip_identical"
    SKIP_NO_TARGET = "skip_no_target"
    SKIP_ECLIPSED = "skip_eclipsed"
    ERROR = "error"

    @property
    def is_write(self) -> bool:
        return self in {PlanAction.INSERT, PlanAction.UPDATE, PlanAction.DELETE}


class UpdateEffect(StrEnum):
    NONE = "none"
    SHRINK = "shrink"
    MOVE = "move"
    GROW = "grow"


class FeedbackStatus(StrEnum):
    APPLIED = "APPLIED"
    SKIPPED_IDENTICAL = "SKIPPED_IDENTICAL"
    SKIPPED_NO_TARGET = "SKIPPED_NO_TARGET"
    SKIPPED_ECLIPSED = "SKIPPED_ECLIPSED"
    ERROR = "ERROR"


def _as_key_sets(value: Sequence[str] | Sequence[Sequence[str]]) -> tuple[tuple[str, ...], ...]:
    items = list(value)
    if not items:
        return ()
    if all(isinstance(item, str) for item in items):
        return (tuple(str(item) for item in items),)
    key_sets: list[tuple[str, ...]] = []
    for item in items:
        if isinstance(item, str):
            key_sets.append((item,))
        else:
            key_sets.append(tuple(item))
    return tuple(key_sets)


@dataclass(frozen=True, slots=True, kw_only=True)
class MergeRequest:
    """Parameters of one temporal merge invocation.

    ``natural_key_sets`` accepts either one flat list of column names (a single
    natural key) or a list of such lists; every set is tried in order when a
    source row carries no primary identity.
    """

    target: str
    source: str | None = None
    identity_columns: tuple[str, ...] = ()
    natural_key_sets: tuple[tuple[str, ...], ...] = field(default=())
    ephemeral_columns: tuple[str, ...] = ()
    mode: MergeMode = MergeMode.ENTITY_PATCH
    era_name: str = DEFAULT_ERA_NAME
    row_id_column: str = DEFAULT_ROW_ID_COLUMN
    founding_id_column: str | None = None
    delete_mode: DeleteMode = DeleteMode.NONE
    update_source_with_identity: bool = False
    update_source_with_feedback: bool = False
    feedback_status_column: str | None = None
    feedback_error_column: str | None = None
    atomic: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "identity_columns", tuple(self.identity_columns))
        object.__setattr__(self, "natural_key_sets", _as_key_sets(self.natural_key_sets))
        object.__setattr__(self, "ephemeral_columns", tuple(self.ephemeral_columns))
        object.__setattr__(self, "mode", MergeMode(self.mode))
        object.__setattr__(self, "delete_mode", DeleteMode(self.delete_mode))
        self.validate()

    def validate(self) -> None:
        """Check the parameters that do not depend on any table schema."""

        if not self.target:
            raise MergeConfigurationError("A target table is required")
        if not self.identity_columns and not self.natural_key_sets:
            raise MergeConfigurationError(
                "At least one identity column or natural key must be configured"
            )
        if any(not key_set for key_set in self.natural_key_sets):
            raise MergeConfigurationError("Natural key sets must not be empty")
        if self.delete_mode is not DeleteMode.NONE and not self.mode.is_entity_scoped:
            raise MergeConfigurationError(
                f"Delete mode {self.delete_mode.value!r} requires an entity-scoped mode, "
                f"not {self.mode.value!r}"
            )
        if self.update_source_with_feedback and self.feedback_status_column is None:
            raise MergeConfigurationError(
                "update_source_with_feedback requires feedback_status_column"
            )
        if self.update_source_with_identity and not self.identity_columns:
            raise MergeConfigurationError(
                "update_source_with_identity requires identity columns to back-fill"
            )

    @property
    def natural_columns(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for key_set in self.natural_key_sets:
            for column in key_set:
                seen.setdefault(column, None)
        return tuple(seen)

    @property
    def entity_columns(self) -> tuple[str, ...]:
        """Columns whose values identify an entity once resolved."""

        if self.identity_columns:
            return self.identity_columns
        return self.natural_key_sets[0]

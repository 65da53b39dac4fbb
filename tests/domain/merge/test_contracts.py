from __future__ import annotations

import pytest

from eramerge.config import ConfigurationError
from eramerge.domain.merge import (
    DeleteMode,
    MergeConfigurationError,
    MergeMode,
    MergeRequest,
)


def test_flat_natural_key_is_normalised_to_one_set() -> None:
    request = MergeRequest(target="t", natural_key_sets=["a", "b"])

    assert request.natural_key_sets == (("a", "b"),)
    assert request.entity_columns == ("a", "b")


def test_several_natural_key_sets_are_kept_in_order() -> None:
    request = MergeRequest(
        target="t", identity_columns=["id"], natural_key_sets=[["a"], ["b", "c"]]
    )

    assert request.natural_key_sets == (("a",), ("b", "c"))
    assert request.natural_columns == ("a", "b", "c")
    assert request.entity_columns == ("id",)


def test_request_without_any_key_is_a_configuration_error() -> None:
    with pytest.raises(MergeConfigurationError):
        MergeRequest(target="t")


def test_configuration_errors_are_configuration_errors() -> None:
    with pytest.raises(ConfigurationError):
        MergeRequest(target="t")


def test_delete_mode_requires_entity_scoped_mode() -> None:
    with pytest.raises(MergeConfigurationError, match="entity-scoped"):
        MergeRequest(
            target="t",
            identity_columns=("id",),
            mode=MergeMode.PATCH_FOR_PORTION_OF,
            delete_mode=DeleteMode.DELETE_MISSING_TIMELINE,
        )


def test_feedback_write_back_requires_status_column() -> None:
    with pytest.raises(MergeConfigurationError, match="feedback_status_column"):
        MergeRequest(target="t", identity_columns=("id",), update_source_with_feedback=True)


def test_modes_accept_their_string_values() -> None:
    request = MergeRequest(
        target="t",
        identity_columns=("id",),
        mode="entity_replace",  # type: ignore[arg-type]
        delete_mode="delete_missing_entities",  # type: ignore[arg-type]
    )

    assert request.mode is MergeMode.ENTITY_REPLACE
    assert request.delete_mode.deletes_entities
    assert not request.delete_mode.deletes_timeline

"""Errors raised by the temporal merge engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

from eramerge.config.errors import ConfigurationError

if TYPE_CHECKING:
    from .engine import MergeResult


class MergeError(RuntimeError):
    """Base class for merge failures that abort a whole call."""


class MergeConfigurationError(MergeError, ConfigurationError):
    """Raised before planning when the call parameters cannot be honoured."""


class IdentityConflictError(MergeConfigurationError):
    """Raised when a supplied identity disagrees with a natural-key match."""


class UnknownEraError(MergeConfigurationError):
    """Raised when the era catalog has no era for the requested target."""


class TargetWriteError(MergeError):
    """Raised by target adapters when a write inside an entity scope fails.

    The executor catches it and converts it into feedback for the rows of the
    affected entity.
    """


class MergeAbortedError(MergeError):
    """Raised for all-or-nothing calls when at least one row ends in error."""

    def __init__(self, message: str, *, result: MergeResult) -> None:
        super().__init__(message)
        self.result = result

"""Era descriptors supplied by the era subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from .contracts import DEFAULT_ERA_NAME
from .errors import UnknownEraError

if TYPE_CHECKING:
    from .intervals import Bound


@dataclass(frozen=True, slots=True, kw_only=True)
class Era:
    """Validity-column names of one era on one target table."""

    name: str = DEFAULT_ERA_NAME
    valid_from_column: str = "valid_from"
    valid_until_column: str = "valid_until"
    valid_to_column: str | None = None

    @property
    def columns(self) -> tuple[str, ...]:
        names = (self.valid_from_column, self.valid_until_column)
        if self.valid_to_column is None:
            return names
        return (*names, self.valid_to_column)

    def to_dict(self) -> dict[str, str | None]:
        return {
            "name": self.name,
            "valid_from_column": self.valid_from_column,
            "valid_until_column": self.valid_until_column,
            "valid_to_column": self.valid_to_column,
        }


class EraCatalog(Protocol):
    """Looks up the era declared for a target table."""

    def era_for(self, target: str, era_name: str) -> Era: ...


@dataclass(slots=True)
class StaticEraCatalog:
    """In-process era registry.

    Unregistered targets fall back to the conventional ``valid_from`` /
    ``valid_until`` columns unless ``strict`` is set.
    """

    eras: dict[tuple[str, str], Era] = field(default_factory=dict["tuple[str, str]", "Era"])
    strict: bool = False

    def register(self, target: str, era: Era) -> None:
        self.eras[(target, era.name)] = era

    def era_for(self, target: str, era_name: str) -> Era:
        era = self.eras.get((target, era_name))
        if era is not None:
            return era
        if self.strict:
            raise UnknownEraError(f"No era {era_name!r} declared for table {target!r}")
        return Era(name=era_name)


def derive_valid_to(valid_until: Bound) -> Bound:
    """Return the inclusive end matching an exclusive ``valid_until``.

    Dates step back one day and integers one unit; other bound types have no
    discrete predecessor and raise ``TypeError``.
    """

    if isinstance(valid_until, datetime):
        raise TypeError("valid_to cannot be derived for timestamp bounds")
    if isinstance(valid_until, date):
        return valid_until - timedelta(days=1)
    if isinstance(valid_until, int) and not isinstance(valid_until, bool):
        return valid_until - 1
    raise TypeError(f"valid_to cannot be derived from {type(valid_until).__name__} bounds")

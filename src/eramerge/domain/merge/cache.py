"""Plan cache: memoized merge templates with a transaction-local and a shared layer.

L1 is a plain dict owned by one ``PlanCache`` instance, which callers create
per transaction. L2 is any ``TemplateStore``; entries carry usage counters
and are validated against the source column signature on every lookup.
Schema owners invalidate entries through a ``SchemaChangeNotifier``.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from eramerge.config.cache import CacheConfig

if TYPE_CHECKING:
    from collections.abc import Callable

    from eramerge.domain.ports.persistence import TemplateStore

    from .contracts import MergeRequest
    from .eras import Era
    from .template import MergeTemplate

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True, kw_only=True)
class CacheEntry:
    cache_key: str
    target_name: str
    source_signature: str
    template: MergeTemplate
    created_at: datetime
    last_used_at: datetime
    use_count: int = 1


@dataclass(frozen=True, slots=True, kw_only=True)
class CacheStats:
    total_entries: int = 0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    most_used: int | None = None
    least_used: int | None = None


def cache_key_for(request: MergeRequest, era: Era) -> str:
    """Key identifying a template independent of the source column signature."""

    natural = ";".join(",".join(key_set) for key_set in request.natural_key_sets)
    parts = (
        request.target,
        request.mode.value,
        request.delete_mode.value,
        era.name,
        ",".join(request.identity_columns),
        natural,
        ",".join(request.ephemeral_columns),
        request.row_id_column,
        request.founding_id_column or "",
        request.feedback_status_column or "",
        request.feedback_error_column or "",
        "identity-backfill" if request.update_source_with_identity else "",
    )
    return ":".join(parts)


class SchemaChangeNotifier:
    """Fan-out of schema change events to subscribed caches."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[str | None], object]] = []

    def subscribe(self, listener: Callable[[str | None], object]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, target: str | None = None) -> None:
        """Announce that ``target`` (or every table, when ``None``) changed shape."""

        log.info("Schema change for %s", target or "all tables")
        for listener in list(self._listeners):
            listener(target)


class PlanCache:
    def __init__(
        self,
        store: TemplateStore | None = None,
        *,
        config: CacheConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
        chance: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.config = config or CacheConfig()
        self._clock = clock
        self._chance = chance
        self._local: dict[str, MergeTemplate] = {}

    def template_for(
        self,
        request: MergeRequest,
        *,
        era: Era,
        source_signature: str,
        build: Callable[[], MergeTemplate],
    ) -> MergeTemplate:
        """Return the cached template for ``request`` or build and store a new one."""

        key = cache_key_for(request, era)
        local = self._local.get(key)
        if local is not None and local.source_signature == source_signature:
            log.debug("Plan cache L1 hit for %s", key)
            return local

        if self.store is not None:
            entry = self.store.fetch(key)
            if entry is not None and entry.source_signature == source_signature:
                log.debug("Plan cache L2 hit for %s", key)
                self.store.touch(key, used_at=self._clock())
                self._local[key] = entry.template
                return entry.template
            if entry is not None:
                log.debug("Plan cache signature mismatch for %s; rebuilding", key)
                self.store.remove(key)

        log.debug("Plan cache miss for %s", key)
        template = build()
        self._local[key] = template
        if self.store is not None:
            now = self._clock()
            self.store.store(
                CacheEntry(
                    cache_key=key,
                    target_name=request.target,
                    source_signature=source_signature,
                    template=template,
                    created_at=now,
                    last_used_at=now,
                )
            )
            if self._chance() < self.config.purge_probability:
                self.purge()
        return template

    def invalidate(self, target: str | None = None) -> int:
        """Drop templates for ``target`` (all templates when ``None``) from both layers."""

        if target is None:
            self._local.clear()
        else:
            for key in [key for key, value in self._local.items() if value.target == target]:
                del self._local[key]
        removed = self.store.invalidate(target) if self.store is not None else 0
        log.info("Invalidated %d cached templates for %s", removed, target or "all tables")
        return removed

    def purge(self) -> int:
        """Evict stale entries and trim the store to its maximum size."""

        if self.store is None:
            return 0
        cutoff = self._clock() - timedelta(days=self.config.max_age_days)
        removed = self.store.purge(unused_since=cutoff, max_entries=self.config.max_entries)
        if removed:
            log.info("Purged %d cached templates", removed)
        return removed

    def stats(self) -> CacheStats:
        if self.store is None:
            return CacheStats(total_entries=len(self._local))
        return self.store.stats()

    def attach(self, notifier: SchemaChangeNotifier) -> Callable[[], None]:
        return notifier.subscribe(self.invalidate)


def touched(entry: CacheEntry, used_at: datetime) -> CacheEntry:
    """Return ``entry`` with its usage counters bumped."""

    return replace(entry, last_used_at=used_at, use_count=entry.use_count + 1)

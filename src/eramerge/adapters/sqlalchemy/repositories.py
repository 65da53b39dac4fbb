"""Repository implementations backed by SQLAlchemy sessions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, cast

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from eramerge.adapters.sqlalchemy.mappings import merge_template_cache_table
from eramerge.domain.merge.cache import CacheEntry, CacheStats
from eramerge.domain.merge.template import MergeTemplate

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy import CursorResult, Delete, Row, Update
    from sqlalchemy.orm import Session

log = logging.getLogger(__name__)

_cache = merge_template_cache_table


class SqlAlchemyTemplateStore:
    """Shared template cache persisted in ``merge_template_cache``."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def fetch(self, cache_key: str) -> CacheEntry | None:
        row = self.session.execute(
            select(_cache).where(_cache.c.cache_key == cache_key)
        ).one_or_none()
        if row is None:
            return None
        try:
            return self._entry(row)
        except (KeyError, TypeError, ValueError):
            log.warning("Discarding unreadable cached template %s", cache_key)
            self.remove(cache_key)
            return None

    @staticmethod
    def _entry(row: Row[tuple[object, ...]]) -> CacheEntry:
        mapping = row._mapping  # noqa: SLF001
        return CacheEntry(
            cache_key=mapping["cache_key"],
            target_name=mapping["target_name"],
            source_signature=mapping["source_signature"],
            template=MergeTemplate.from_dict(mapping["template"]),
            created_at=mapping["created_at"],
            last_used_at=mapping["last_used_at"],
            use_count=mapping["use_count"],
        )

    def touch(self, cache_key: str, *, used_at: datetime) -> None:
        self.session.execute(
            update(_cache)
            .where(_cache.c.cache_key == cache_key)
            .values(last_used_at=used_at, use_count=_cache.c.use_count + 1)
        )

    def store(self, entry: CacheEntry) -> None:
        values = {
            "target_name": entry.target_name,
            "source_signature": entry.source_signature,
            "template": entry.template.to_dict(),
            "created_at": entry.created_at,
            "last_used_at": entry.last_used_at,
            "use_count": entry.use_count,
        }
        overwrite = update(_cache).where(_cache.c.cache_key == entry.cache_key).values(values)
        if self._execute(overwrite).rowcount:
            return
        try:
            with self.session.begin_nested():
                self.session.execute(insert(_cache).values(cache_key=entry.cache_key, **values))
        except IntegrityError:
            log.debug("Template %s was stored concurrently, replacing it", entry.cache_key)
            self._execute(overwrite)

    def remove(self, cache_key: str) -> None:
        self.session.execute(delete(_cache).where(_cache.c.cache_key == cache_key))

    def invalidate(self, target: str | None = None) -> int:
        stmt = delete(_cache)
        if target is not None:
            stmt = stmt.where(_cache.c.target_name == target)
        return self._execute(stmt).rowcount

    def purge(self, *, unused_since: datetime, max_entries: int) -> int:
        removed = self._execute(delete(_cache).where(_cache.c.last_used_at < unused_since)).rowcount
        remaining = self.session.execute(select(func.count()).select_from(_cache)).scalar_one()
        excess = remaining - max_entries
        if excess > 0:
            oldest = (
                select(_cache.c.cache_key)
                .order_by(_cache.c.last_used_at.asc(), _cache.c.cache_key)
                .limit(excess)
            )
            keys = list(self.session.execute(oldest).scalars())
            removed += self._execute(delete(_cache).where(_cache.c.cache_key.in_(keys))).rowcount
        return removed

    def stats(self) -> CacheStats:
        row = self.session.execute(
            select(
                func.count(),
                func.min(_cache.c.created_at),
                func.max(_cache.c.created_at),
                func.max(_cache.c.use_count),
                func.min(_cache.c.use_count),
            ).select_from(_cache)
        ).one()
        total, oldest, newest, most_used, least_used = row
        return CacheStats(
            total_entries=total,
            oldest_entry=oldest,
            newest_entry=newest,
            most_used=most_used,
            least_used=least_used,
        )

    def _execute(self, stmt: Update | Delete) -> CursorResult[object]:
        return cast("CursorResult[object]", self.session.execute(stmt))

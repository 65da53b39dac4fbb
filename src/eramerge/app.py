"""Application orchestration entry points."""

from __future__ import annotations

from collections.abc import Callable
from logging import getLogger
from typing import TYPE_CHECKING

from eramerge.adapters.sqlalchemy.unit_of_work import (
    SqlAlchemyMergeUnitOfWork,
    is_started,
    startup,
)
from eramerge.config.cache import get_cache_config
from eramerge.domain.merge import (
    MergeConfigurationError,
    PlanCache,
    SchemaChangeNotifier,
    StaticEraCatalog,
    TemporalMergeEngine,
)
from eramerge.domain.ports.unit_of_work import MergeUnitOfWork

if TYPE_CHECKING:
    from eramerge.config.cache import CacheConfig
    from eramerge.domain.merge import CacheStats, EraCatalog, MergeRequest, MergeResult

UnitOfWorkFactory = Callable[[], MergeUnitOfWork]

log = getLogger(__name__)

SCHEMA_CHANGES = SchemaChangeNotifier()


def _unit_of_work_factory(factory: UnitOfWorkFactory | None) -> UnitOfWorkFactory:
    if factory is not None:
        return factory
    if not is_started():
        startup()
    return SqlAlchemyMergeUnitOfWork


def _plan_cache(uow: MergeUnitOfWork, config: CacheConfig | None) -> PlanCache:
    return PlanCache(uow.repositories.templates, config=config or get_cache_config())


def run_temporal_merge(
    request: MergeRequest,
    *,
    unit_of_work_factory: UnitOfWorkFactory | None = None,
    eras: EraCatalog | None = None,
    cache_config: CacheConfig | None = None,
) -> MergeResult:
    """Merge the source table of ``request`` into its target in one transaction.

    Atomic requests that end with row errors raise ``MergeAbortedError``; the
    unit of work rolls back every write, including template cache updates.
    """

    if request.source is None:
        raise MergeConfigurationError("A source table is required to run a merge")
    effective_uow = _unit_of_work_factory(unit_of_work_factory)
    with effective_uow() as uow:
        cache = _plan_cache(uow, cache_config)
        detach = cache.attach(SCHEMA_CHANGES)
        try:
            engine = TemporalMergeEngine(cache=cache, eras=eras or StaticEraCatalog())
            tables = uow.repositories.tables
            result = engine.merge(
                request,
                target=tables.target(request.target),
                source=tables.source(request.source),
            )
            uow.commit()
        finally:
            detach()
    return result


def cache_stats(*, unit_of_work_factory: UnitOfWorkFactory | None = None) -> CacheStats:
    effective_uow = _unit_of_work_factory(unit_of_work_factory)
    with effective_uow() as uow:
        return _plan_cache(uow, None).stats()


def invalidate_cache(
    target: str | None = None,
    *,
    unit_of_work_factory: UnitOfWorkFactory | None = None,
) -> int:
    """Drop cached templates for ``target`` (all when ``None``) and notify running merges."""

    effective_uow = _unit_of_work_factory(unit_of_work_factory)
    with effective_uow() as uow:
        removed = _plan_cache(uow, None).invalidate(target)
        uow.commit()
    SCHEMA_CHANGES.notify(target)
    return removed


def purge_cache(
    *,
    unit_of_work_factory: UnitOfWorkFactory | None = None,
    cache_config: CacheConfig | None = None,
) -> int:
    effective_uow = _unit_of_work_factory(unit_of_work_factory)
    with effective_uow() as uow:
        removed = _plan_cache(uow, cache_config).purge()
        uow.commit()
    log.info("Purged %d cached templates", removed)
    return removed

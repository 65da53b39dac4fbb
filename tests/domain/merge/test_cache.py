from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from eramerge.adapters.memory import InMemoryTemplateStore
from eramerge.config.cache import CacheConfig
from eramerge.domain.merge import Era, PlanCache, SchemaChangeNotifier
from eramerge.domain.merge.cache import cache_key_for
from tests.helpers.merge import build_person_template, d, person_request, source_row

if TYPE_CHECKING:
    from eramerge.domain.merge import MergeRequest, MergeTemplate

ROWS = [source_row(1, d(2020), d(2021), entity_id=1, name="Ann")]


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


class Builder:
    def __init__(self, request: MergeRequest) -> None:
        self.request = request
        self.calls = 0

    def __call__(self) -> MergeTemplate:
        self.calls += 1
        return build_person_template(self.request, ROWS)


def _cache(
    store: InMemoryTemplateStore | None = None,
    *,
    clock: Clock | None = None,
    config: CacheConfig | None = None,
    chance: float = 1.0,
) -> PlanCache:
    return PlanCache(
        store,
        config=config,
        clock=clock or Clock(),
        chance=lambda: chance,
    )


def _template_for(cache: PlanCache, builder: Builder, signature: str = "sig") -> MergeTemplate:
    return cache.template_for(builder.request, era=Era(), source_signature=signature, build=builder)


def test_transaction_local_hit_builds_once() -> None:
    builder = Builder(person_request())
    cache = _cache()

    first = _template_for(cache, builder)
    second = _template_for(cache, builder)

    assert first is second
    assert builder.calls == 1
    assert cache.stats().total_entries == 1


def test_shared_store_hit_counts_usage() -> None:
    store = InMemoryTemplateStore()
    builder = Builder(person_request())
    _template_for(_cache(store), builder)

    _template_for(_cache(store), builder)

    assert builder.calls == 1
    stats = store.stats()
    assert stats.total_entries == 1
    assert stats.most_used == 2


def test_signature_mismatch_rebuilds_entry() -> None:
    store = InMemoryTemplateStore()
    builder = Builder(person_request())
    _template_for(_cache(store), builder, "old")

    _template_for(_cache(store), builder, "new")

    assert builder.calls == 2
    entry = store.fetch(cache_key_for(builder.request, Era()))
    assert entry is not None
    assert entry.source_signature == "new"
    assert entry.use_count == 1


def test_invalidate_by_target_clears_both_layers() -> None:
    store = InMemoryTemplateStore()
    builder = Builder(person_request())
    cache = _cache(store)
    _template_for(cache, builder)

    assert cache.invalidate("elsewhere") == 0
    assert cache.invalidate("person") == 1
    _template_for(cache, builder)

    assert builder.calls == 2


def test_purge_drops_entries_unused_for_too_long() -> None:
    store = InMemoryTemplateStore()
    clock = Clock()
    config = CacheConfig(max_entries=10, max_age_days=30, purge_probability=0.0)
    _template_for(_cache(store, clock=clock, config=config), Builder(person_request()))

    clock.now += timedelta(days=31)
    _template_for(
        _cache(store, clock=clock, config=config),
        Builder(person_request(mode="entity_replace")),
    )
    removed = _cache(store, clock=clock, config=config).purge()

    assert removed == 1
    assert store.stats().total_entries == 1


def test_purge_keeps_most_recently_used_entries() -> None:
    store = InMemoryTemplateStore()
    clock = Clock()
    config = CacheConfig(max_entries=2, max_age_days=30, purge_probability=0.0)
    modes = ["entity_patch", "entity_replace", "insert_only"]
    for mode in modes:
        _template_for(_cache(store, clock=clock, config=config), Builder(person_request(mode=mode)))
        clock.now += timedelta(hours=1)

    removed = _cache(store, clock=clock, config=config).purge()

    assert removed == 1
    remaining = {
        mode
        for mode in modes
        if store.fetch(cache_key_for(person_request(mode=mode), Era())) is not None
    }
    assert remaining == {"entity_replace", "insert_only"}


def test_probabilistic_purge_runs_on_store() -> None:
    store = InMemoryTemplateStore()
    clock = Clock()
    config = CacheConfig(max_entries=1, max_age_days=30, purge_probability=0.5)
    _template_for(_cache(store, clock=clock, config=config, chance=0.9), Builder(person_request()))
    clock.now += timedelta(hours=1)
    _template_for(
        _cache(store, clock=clock, config=config, chance=0.9),
        Builder(person_request(mode="entity_replace")),
    )
    assert store.stats().total_entries == 2

    clock.now += timedelta(hours=1)
    _template_for(
        _cache(store, clock=clock, config=config, chance=0.0),
        Builder(person_request(mode="insert_only")),
    )

    assert store.stats().total_entries == 1


def test_schema_change_notifier_invalidates_attached_caches() -> None:
    notifier = SchemaChangeNotifier()
    store = InMemoryTemplateStore()
    builder = Builder(person_request())
    cache = _cache(store)
    detach = cache.attach(notifier)
    _template_for(cache, builder)

    notifier.notify("person")
    _template_for(cache, builder)
    detach()
    notifier.notify()

    assert builder.calls == 2
    assert store.stats().total_entries == 1


def test_cache_key_ignores_source_but_not_options() -> None:
    request = person_request()

    assert cache_key_for(request, Era()) == cache_key_for(person_request(), Era())
    assert cache_key_for(request, Era()) != cache_key_for(request, Era(name="legal"))
    assert cache_key_for(request, Era()) != cache_key_for(
        person_request(ephemeral_columns=("name",)), Era()
    )

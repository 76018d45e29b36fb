"""Tests for the per-topic incremental resource cache."""

import asyncio
import gc
from collections.abc import Sequence
from typing import Any

import pytest

from core.config import Settings
from services.document_store import DocumentStore, WriteBatch
from services.resources.resource_cache import (
    ResourceCache,
    ResourceKey,
    ResourceKind,
    link_dedup_key,
    link_kind,
    video_kind,
)


KEY = ResourceKey.for_topic("Matemáticas", "Fase I", "Geometría")


class FakeSource:
    """Search source returning fresh, distinct URLs on every call."""

    def __init__(self, *, empty_for: Sequence[str] = (), duplicates: int = 0) -> None:
        self.calls: list[tuple[list[str], int]] = []
        self.empty_for = set(empty_for)
        self.duplicates = duplicates
        self._counter = 0

    async def __call__(self, keywords: list[str], limit: int) -> list[dict[str, Any]]:
        self.calls.append((list(keywords), limit))
        if self.empty_for.intersection(keywords):
            return []
        results = []
        for _ in range(limit):
            self._counter += 1
            results.append(
                {"title": f"Recurso {self._counter}", "url": self._url(self._counter)}
            )
        # Cosmetic variants of the first URLs, ahead of the originals
        copies = [
            {"title": "copia", "url": results[i]["url"] + "/#frag"}
            for i in range(min(self.duplicates, len(results)))
        ]
        return copies + results

    @staticmethod
    def _url(n: int) -> str:
        return f"https://khanacademy.org/recurso/{n}"


def small_kind(capacity: int, return_count: int, overfetch: int = 0) -> ResourceKind:
    return ResourceKind(
        name="links",
        root="WebLinks",
        collection="links",
        doc_prefix="link",
        capacity=capacity,
        return_count=return_count,
        dedup_key=link_dedup_key,
        overfetch=overfetch,
    )


async def seed(store: DocumentStore, kind: ResourceKind, count: int) -> None:
    batch = WriteBatch()
    for order in range(1, count + 1):
        url = f"https://edu.co/seed/{order}"
        batch.set(
            f"{kind.collection_path(KEY)}/link{order:02d}",
            {"url": url, "title": f"Seed {order}", "order": order},
        )
    await store.commit_batch(batch)


async def stored_count(store: DocumentStore, kind: ResourceKind) -> int:
    return len(await store.list_collection(kind.collection_path(KEY)))


@pytest.mark.asyncio
async def test_empty_cache_fills_to_capacity(
    store: DocumentStore, settings: Settings
) -> None:
    kind = video_kind(settings)
    source = FakeSource()
    cache = ResourceCache(store, kind, source)

    entries = await cache.get(KEY, keywords=["triángulos"])

    assert len(entries) == kind.return_count == 7
    assert await stored_count(store, kind) == kind.capacity == 20
    assert source.calls == [(["triángulos"], 25)]
    assert [e.order for e in entries] == list(range(1, 8))


@pytest.mark.asyncio
async def test_entries_are_stored_in_zero_padded_slots(
    store: DocumentStore, settings: Settings
) -> None:
    kind = link_kind(settings)
    cache = ResourceCache(store, kind, FakeSource())
    await cache.get(KEY, keywords=["áreas"])

    documents = await store.list_collection(kind.collection_path(KEY))
    assert documents[0].doc_id == "link01"
    assert documents[-1].doc_id == "link50"
    assert documents[0].path.startswith("WebLinks/Fase I/Matemáticas/geometría/links")
    assert "savedAt" in documents[0].data


@pytest.mark.asyncio
async def test_never_more_than_requested_and_no_duplicates(
    store: DocumentStore,
) -> None:
    kind = small_kind(capacity=10, return_count=3)
    cache = ResourceCache(store, kind, FakeSource(duplicates=5))

    entries = await cache.get(KEY, 4, keywords=["x"])

    assert len(entries) == 4
    keys = [e.dedup_key for e in await cache.read(KEY)]
    assert len(keys) == len(set(keys)) == 10


@pytest.mark.asyncio
async def test_repeated_calls_never_exceed_capacity(store: DocumentStore) -> None:
    kind = small_kind(capacity=6, return_count=2, overfetch=4)
    cache = ResourceCache(store, kind, FakeSource())

    for _ in range(4):
        await cache.get(KEY, keywords=["x"])
    assert await stored_count(store, kind) == 6


@pytest.mark.asyncio
async def test_counts_are_monotonic_when_candidates_are_rejected(
    store: DocumentStore,
) -> None:
    kind = small_kind(capacity=10, return_count=5)
    accepted_urls: set[str] = set()

    async def accept_odd(payload: dict[str, Any], keywords: Sequence[str]) -> bool:
        n = int(payload["url"].rsplit("/", 1)[-1])
        if n % 2:
            accepted_urls.add(payload["url"])
        return bool(n % 2)

    cache = ResourceCache(store, kind, FakeSource(), accept=accept_odd)

    await cache.get(KEY, keywords=["x"])
    first = await stored_count(store, kind)
    await cache.get(KEY, keywords=["x"])
    second = await stored_count(store, kind)

    assert 0 < first <= second <= kind.capacity
    stored = {e.payload["url"] for e in await cache.read(KEY)}
    assert stored <= accepted_urls


@pytest.mark.asyncio
async def test_nearly_full_cache_requests_only_what_is_missing(
    store: DocumentStore,
) -> None:
    kind = small_kind(capacity=50, return_count=7)
    await seed(store, kind, 47)
    source = FakeSource()
    cache = ResourceCache(store, kind, source)

    entries = await cache.get(KEY, 7, keywords=["x"])

    assert source.calls == [(["x"], 3)]
    assert len(entries) == 7
    assert await stored_count(store, kind) == 50
    assert [e.order for e in await cache.read(KEY)][-3:] == [48, 49, 50]


@pytest.mark.asyncio
async def test_nearly_full_link_cache_admits_at_most_missing(
    store: DocumentStore, settings: Settings
) -> None:
    kind = link_kind(settings)
    await seed(store, kind, 47)
    source = FakeSource()
    cache = ResourceCache(store, kind, source)

    await cache.get(KEY, 7, keywords=["x"])

    assert source.calls[0][1] == 3 + kind.overfetch
    assert await stored_count(store, kind) == 50


@pytest.mark.asyncio
async def test_full_cache_is_never_searched(store: DocumentStore) -> None:
    kind = small_kind(capacity=5, return_count=3)
    await seed(store, kind, 5)
    source = FakeSource()
    cache = ResourceCache(store, kind, source)

    entries = await cache.get(KEY, keywords=["x"])
    assert len(entries) == 3
    assert source.calls == []


@pytest.mark.asyncio
async def test_lazy_refill_serves_enough_entries(store: DocumentStore) -> None:
    kind = small_kind(capacity=10, return_count=3)
    await seed(store, kind, 4)
    source = FakeSource()
    cache = ResourceCache(store, kind, source, eager_refill=False)

    entries = await cache.get(KEY, keywords=["x"])
    assert len(entries) == 3
    assert source.calls == []


@pytest.mark.asyncio
async def test_fallback_keywords_after_empty_search(store: DocumentStore) -> None:
    kind = small_kind(capacity=3, return_count=3)
    source = FakeSource(empty_for=["muy específico"])
    cache = ResourceCache(store, kind, source)

    entries = await cache.get(
        KEY,
        keywords=["muy específico"],
        fallback_keywords=["Geometría", "Matemáticas"],
    )

    assert [call[0] for call in source.calls] == [
        ["muy específico"],
        ["Geometría", "Matemáticas"],
    ]
    assert len(entries) == 3


@pytest.mark.asyncio
async def test_nothing_found_serves_cached(store: DocumentStore) -> None:
    kind = small_kind(capacity=10, return_count=5)
    await seed(store, kind, 2)
    cache = ResourceCache(store, kind, FakeSource(empty_for=["x"]))

    entries = await cache.get(KEY, keywords=["x"])
    assert [e.order for e in entries] == [1, 2]


@pytest.mark.asyncio
async def test_validation_budget_caps_acceptor_calls(store: DocumentStore) -> None:
    kind = small_kind(capacity=3, return_count=3, overfetch=17)
    calls = 0

    async def reject(payload: dict[str, Any], keywords: Sequence[str]) -> bool:
        nonlocal calls
        calls += 1
        return False

    cache = ResourceCache(
        store, kind, FakeSource(), accept=reject, validation_budget_factor=2
    )
    entries = await cache.get(KEY, keywords=["x"])

    assert entries == []
    assert calls == 6


@pytest.mark.asyncio
async def test_per_call_source_overrides_default(store: DocumentStore) -> None:
    kind = small_kind(capacity=2, return_count=2)
    default = FakeSource()
    override = FakeSource()
    cache = ResourceCache(store, kind, default)

    await cache.get(KEY, keywords=["x"], source=override)
    assert default.calls == []
    assert len(override.calls) == 1


@pytest.mark.asyncio
async def test_concurrent_refills_for_one_key_are_serialized(
    store: DocumentStore,
) -> None:
    kind = small_kind(capacity=5, return_count=5)
    source = FakeSource()
    cache = ResourceCache(store, kind, source)

    first, second = await asyncio.gather(
        cache.get(KEY, keywords=["x"]), cache.get(KEY, keywords=["x"])
    )

    assert len(source.calls) == 1
    assert [e.dedup_key for e in first] == [e.dedup_key for e in second]
    assert await stored_count(store, kind) == 5


@pytest.mark.asyncio
async def test_key_locks_are_released_after_use(store: DocumentStore) -> None:
    cache = ResourceCache(store, small_kind(capacity=3, return_count=3), FakeSource())

    await cache.get(KEY, keywords=["x"])
    gc.collect()

    assert len(cache._locks) == 0


def test_key_normalizes_topic() -> None:
    key = ResourceKey.for_topic(" Matemáticas ", "Fase I", "Álgebra y Cálculo")
    assert key == ResourceKey("Matemáticas", "Fase I", "álgebra-y-cálculo")

"""Per-topic incremental cache of validated resources.

Each ``ResourceKey`` (subject, grade, topic) owns up to ``capacity`` ordered
documents of one ``ResourceKind``. A read that finds the set below capacity
searches the injected source for more candidates, deduplicates them,
validates them, appends them at the next free slots and only then serves
the request. Entries are never removed, so repeated calls for the same topic
converge toward a full cache.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from core.config import Settings, get_settings
from services.document_store import DocumentStore, WriteBatch, collection_path
from services.resources.topics import (
    normalize_for_match,
    normalize_topic_id,
    normalize_url,
    zero_padded_doc_id,
)


logger = logging.getLogger(__name__)

SearchSource = Callable[[list[str], int], Awaitable[list[dict[str, Any]]]]
Acceptor = Callable[[dict[str, Any], Sequence[str]], Awaitable[bool]]
DedupKeyFn = Callable[[dict[str, Any]], str | None]


def video_dedup_key(payload: dict[str, Any]) -> str | None:
    video_id = payload.get("videoId")
    if video_id:
        return str(video_id)
    url = payload.get("url")
    return normalize_url(url) if url else None


def link_dedup_key(payload: dict[str, Any]) -> str | None:
    url = payload.get("url")
    return normalize_url(url) if url else None


def exercise_dedup_key(payload: dict[str, Any]) -> str | None:
    question = payload.get("question")
    return normalize_for_match(question) if question else None


@dataclass(frozen=True, slots=True)
class ResourceKey:
    subject: str
    grade: str
    topic: str

    @classmethod
    def for_topic(cls, subject: str, grade: str, topic_name: str) -> ResourceKey:
        return cls(
            subject=subject.strip(),
            grade=grade.strip(),
            topic=normalize_topic_id(topic_name),
        )


@dataclass(frozen=True, slots=True)
class ResourceKind:
    name: str
    root: str
    collection: str
    doc_prefix: str
    capacity: int
    return_count: int
    dedup_key: DedupKeyFn
    overfetch: int = 5
    # Minimum number of candidates requested when the cache is empty
    min_request_when_empty: int = 0

    def collection_path(self, key: ResourceKey) -> str:
        return collection_path(
            self.root, key.grade, key.subject, key.topic, self.collection
        )

    def request_size(self, cached_count: int, needed: int) -> int:
        size = needed + self.overfetch
        if cached_count == 0:
            size = max(self.min_request_when_empty, size)
        return size


def video_kind(settings: Settings | None = None) -> ResourceKind:
    settings = settings or get_settings()
    return ResourceKind(
        name="videos",
        root="YoutubeLinks",
        collection="videos",
        doc_prefix="video",
        capacity=settings.VIDEO_CACHE_CAPACITY,
        return_count=settings.VIDEOS_PER_TOPIC,
        dedup_key=video_dedup_key,
        overfetch=5,
        min_request_when_empty=settings.VIDEOS_PER_TOPIC,
    )


def link_kind(settings: Settings | None = None) -> ResourceKind:
    settings = settings or get_settings()
    return ResourceKind(
        name="links",
        root="WebLinks",
        collection="links",
        doc_prefix="link",
        capacity=settings.LINK_CACHE_CAPACITY,
        return_count=settings.LINKS_PER_TOPIC,
        dedup_key=link_dedup_key,
        overfetch=10,
    )


def exercise_kind(settings: Settings | None = None) -> ResourceKind:
    settings = settings or get_settings()
    return ResourceKind(
        name="exercises",
        root="EjerciciosIA",
        collection="ejercicios",
        doc_prefix="ejercicio",
        capacity=settings.EXERCISE_CACHE_CAPACITY,
        return_count=settings.EXERCISES_PER_TOPIC,
        dedup_key=exercise_dedup_key,
        overfetch=0,
    )


@dataclass(frozen=True, slots=True)
class CachedResource:
    key: ResourceKey
    order: int
    dedup_key: str
    payload: dict[str, Any]


async def accept_all(payload: dict[str, Any], keywords: Sequence[str]) -> bool:
    return True


class ResourceCache:
    """Cache for one resource kind, refilled from one search source."""

    def __init__(
        self,
        store: DocumentStore,
        kind: ResourceKind,
        source: SearchSource,
        *,
        accept: Acceptor = accept_all,
        validation_budget_factor: int | None = None,
        eager_refill: bool = True,
    ) -> None:
        self.store = store
        self.kind = kind
        self.source = source
        self.accept = accept
        # Caps acceptor calls at needed * factor
        self.validation_budget_factor = validation_budget_factor
        # When False, a cache already holding target_count entries is served as is
        self.eager_refill = eager_refill
        # entries disappear once no call holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[ResourceKey, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, key: ResourceKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def read(self, key: ResourceKey) -> list[CachedResource]:
        """Stored entries for ``key`` in slot order, capped at capacity."""
        documents = await self.store.list_collection(
            self.kind.collection_path(key), order_by="order"
        )
        entries: list[CachedResource] = []
        seen: set[str] = set()
        for document in documents:
            payload = document.data
            order = payload.get("order")
            dedup = payload.get("dedupKey") or self.kind.dedup_key(payload)
            if not isinstance(order, int) or not dedup or dedup in seen:
                continue
            if order > self.kind.capacity:
                continue
            seen.add(dedup)
            entries.append(
                CachedResource(key=key, order=order, dedup_key=dedup, payload=payload)
            )
        return entries

    async def get(
        self,
        key: ResourceKey,
        target_count: int | None = None,
        *,
        keywords: Sequence[str],
        fallback_keywords: Sequence[str] = (),
        source: SearchSource | None = None,
    ) -> list[CachedResource]:
        """Up to ``target_count`` entries, refilling toward capacity first.

        ``source`` replaces the cache's default search source for this call.
        """
        search = source or self.source
        target = target_count if target_count is not None else self.kind.return_count
        async with self._lock_for(key):
            cached = await self.read(key)
            threshold = self.kind.capacity if self.eager_refill else target
            if len(cached) >= min(threshold, self.kind.capacity):
                return cached[:target]

            needed = self.kind.capacity - len(cached)
            request_size = self.kind.request_size(len(cached), needed)
            logger.info(
                "Refilling %s for %s/%s/%s: %d cached, %d needed, requesting %d",
                self.kind.name,
                key.grade,
                key.subject,
                key.topic,
                len(cached),
                needed,
                request_size,
            )

            used_keywords = list(keywords)
            candidates = await self._search(search, used_keywords, request_size)
            if not candidates and fallback_keywords:
                used_keywords = list(fallback_keywords)
                logger.info(
                    "No %s found for %s, retrying with fallback keywords %s",
                    self.kind.name,
                    key.topic,
                    used_keywords,
                )
                candidates = await self._search(search, used_keywords, request_size)
            if not candidates:
                logger.warning(
                    "No new %s for %s/%s; serving %d cached",
                    self.kind.name,
                    key.subject,
                    key.topic,
                    len(cached),
                )
                return cached[:target]

            accepted = await self._admit(candidates, cached, needed, used_keywords)
            if accepted:
                await self._persist(key, accepted, start_order=self._next_order(cached))
                cached = await self.read(key)
            return cached[:target]

    async def _search(
        self, source: SearchSource, keywords: list[str], limit: int
    ) -> list[dict[str, Any]]:
        if not keywords or limit <= 0:
            return []
        return list(await source(keywords, limit))

    async def _admit(
        self,
        candidates: list[dict[str, Any]],
        cached: list[CachedResource],
        needed: int,
        keywords: Sequence[str],
    ) -> list[dict[str, Any]]:
        """Deduplicate and validate candidates; at most ``needed`` survive."""
        known = {entry.dedup_key for entry in cached}
        budget = (
            needed * self.validation_budget_factor
            if self.validation_budget_factor
            else len(candidates)
        )
        accepted: list[dict[str, Any]] = []
        attempts = 0
        for candidate in candidates:
            if len(accepted) >= needed or attempts >= budget:
                break
            dedup = self.kind.dedup_key(candidate)
            if not dedup or dedup in known:
                continue
            known.add(dedup)
            attempts += 1
            if await self.accept(candidate, keywords):
                accepted.append({**candidate, "dedupKey": dedup})
        logger.info(
            "Accepted %d/%d new %s candidate(s)",
            len(accepted),
            len(candidates),
            self.kind.name,
        )
        return accepted

    def _next_order(self, cached: list[CachedResource]) -> int:
        return max((entry.order for entry in cached), default=0) + 1

    async def _persist(
        self, key: ResourceKey, accepted: list[dict[str, Any]], start_order: int
    ) -> None:
        batch = WriteBatch()
        collection = self.kind.collection_path(key)
        saved_at = datetime.now(UTC).isoformat()
        for offset, payload in enumerate(accepted):
            order = start_order + offset
            if order > self.kind.capacity:
                break
            doc_id = zero_padded_doc_id(self.kind.doc_prefix, order)
            batch.set(
                f"{collection}/{doc_id}",
                {**payload, "order": order, "savedAt": saved_at},
            )
        await self.store.commit_batch(batch)
        logger.info(
            "Saved %d %s for %s/%s", len(batch), self.kind.name, key.subject, key.topic
        )

"""Generic hierarchical document store on top of SQLAlchemy async.

Documents are addressed by slash-separated paths that alternate collection
and document ids (``WebLinks/Fase I/Matemáticas/geometria/links/link01``).
Only point reads, merge writes, collection listing and batched commits are
offered; callers filter in Python rather than relying on query features.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from core.config import get_settings
from models.base import Base
from models.documents import StoredDocument


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Document:
    path: str
    doc_id: str
    data: dict[str, Any]


@dataclass(frozen=True, slots=True)
class DocumentWrite:
    path: str
    data: Mapping[str, Any]
    merge: bool = True


@dataclass(slots=True)
class WriteBatch:
    """Collects writes to be committed in one transaction."""

    writes: list[DocumentWrite] = field(default_factory=list)

    def set(self, path: str, data: Mapping[str, Any], *, merge: bool = True) -> None:
        self.writes.append(DocumentWrite(path=path, data=data, merge=merge))

    def __len__(self) -> int:
        return len(self.writes)


def normalize_async_url(url: str) -> str:
    """Coerce plain postgres URLs to the asyncpg driver."""
    if url.startswith("postgres://"):
        url = "postgresql+asyncpg://" + url[len("postgres://") :]
    elif url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://") :]
    # asyncpg doesn't accept 'sslmode' parameter, convert to 'ssl'
    return url.replace("sslmode=", "ssl=")


def split_path(path: str) -> list[str]:
    segments = [s for s in path.strip("/").split("/")]
    if not segments or any(not s.strip() for s in segments):
        raise ValueError(f"Invalid document path: {path!r}")
    return segments


def document_path(*segments: str) -> str:
    path = "/".join(s.strip("/") for s in segments)
    if len(split_path(path)) % 2 != 0:
        raise ValueError(f"Document paths need an even number of segments: {path!r}")
    return path


def collection_path(*segments: str) -> str:
    path = "/".join(s.strip("/") for s in segments)
    if len(split_path(path)) % 2 != 1:
        raise ValueError(f"Collection paths need an odd number of segments: {path!r}")
    return path


def deep_merge(base: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in update.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


class DocumentStore:
    """Key -> document store with merge writes and batched commits."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        timeout: float | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        if timeout is None:
            timeout = get_settings().STORE_TIMEOUT_SECONDS
        self.timeout = timeout

    @classmethod
    def from_url(cls, url: str | None = None, **engine_kwargs: Any) -> DocumentStore:
        engine = create_async_engine(
            normalize_async_url(url or get_settings().DATABASE_URL),
            future=True,
            echo=False,
            **engine_kwargs,
        )
        return cls.from_engine(engine)

    @classmethod
    def from_engine(cls, engine: AsyncEngine, **kwargs: Any) -> DocumentStore:
        factory = async_sessionmaker(
            engine, expire_on_commit=False, class_=AsyncSession
        )
        return cls(factory, engine=engine, **kwargs)

    async def create_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("create_schema() needs a store built from an engine")
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def _bounded(self, operation: Awaitable[T]) -> T:
        return await asyncio.wait_for(operation, timeout=self.timeout)

    async def get(self, path: str) -> dict[str, Any] | None:
        path = document_path(path)

        async def _get() -> dict[str, Any] | None:
            async with self._session_factory() as session:
                row = await session.get(StoredDocument, path)
                return dict(row.data) if row is not None else None

        return await self._bounded(_get())

    async def set(
        self, path: str, data: Mapping[str, Any], *, merge: bool = True
    ) -> None:
        await self.commit_batch([DocumentWrite(path=path, data=data, merge=merge)])

    async def list_collection(
        self, path: str, *, order_by: str | None = None
    ) -> list[Document]:
        """All documents directly under a collection, optionally sorted by a field."""
        path = collection_path(path)

        async def _list() -> list[Document]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StoredDocument)
                    .where(StoredDocument.parent_path == path)
                    .order_by(StoredDocument.doc_id)
                )
                return [
                    Document(path=row.path, doc_id=row.doc_id, data=dict(row.data))
                    for row in result.scalars().all()
                ]

        documents = await self._bounded(_list())
        if order_by is not None:
            # Documents missing the field sort last
            documents.sort(
                key=lambda d: (d.data.get(order_by) is None, d.data.get(order_by) or 0)
            )
        return documents

    async def commit_batch(self, writes: Sequence[DocumentWrite] | WriteBatch) -> None:
        """Apply every write in a single transaction."""
        items = writes.writes if isinstance(writes, WriteBatch) else list(writes)
        if not items:
            return

        # Writes to the same path collapse into one, in order
        coalesced: dict[str, DocumentWrite] = {}
        for write in items:
            path = document_path(write.path)
            previous = coalesced.get(path)
            if previous is not None and write.merge:
                write = DocumentWrite(
                    path=path,
                    data=deep_merge(previous.data, write.data),
                    merge=previous.merge,
                )
            coalesced[path] = write

        async def _commit() -> None:
            async with self._session_factory() as session:
                async with session.begin():
                    for write in coalesced.values():
                        await self._apply(session, write)

        await self._bounded(_commit())
        logger.debug("Committed %d document write(s)", len(items))

    async def _apply(self, session: AsyncSession, write: DocumentWrite) -> None:
        path = document_path(write.path)
        segments = split_path(path)
        row = await session.get(StoredDocument, path)
        if row is None:
            session.add(
                StoredDocument(
                    path=path,
                    parent_path="/".join(segments[:-1]),
                    doc_id=segments[-1],
                    data=dict(write.data),
                )
            )
            return
        # Assign a new object so the JSON column is flagged as modified
        if write.merge:
            row.data = deep_merge(row.data or {}, write.data)
        else:
            row.data = dict(write.data)
        row.updated_at = datetime.now(UTC)

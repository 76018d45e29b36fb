"""Hierarchical document table backing the generic document store."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class StoredDocument(Base):
    """One document addressed by a ``collection/doc/collection/doc`` path.

    ``parent_path`` is the collection path, so listing a collection is a
    single indexed lookup.
    """

    __tablename__ = "documents"

    path: Mapped[str] = mapped_column(String(1024), primary_key=True)
    parent_path: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    doc_id: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[Any] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return f"<StoredDocument(path={self.path})>"

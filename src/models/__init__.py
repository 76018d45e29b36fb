"""Expose commonly used ORM models at package level.

These re-exports are intentional so callers can import from
``models`` (e.g. `from models import StoredDocument`).
"""

from .base import Base  # noqa: F401
from .documents import StoredDocument  # noqa: F401

"""Shared test fixtures for pytest.

``ENVIRONMENT`` is pinned to ``test`` before any module reads settings so no
``.env`` file is consulted and no credential export happens.
"""

import os
from collections.abc import AsyncGenerator, Callable
from contextlib import nullcontext
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool


os.environ.setdefault("ENVIRONMENT", "test")

from core.config import Settings
from services.ai.models import RawGeneration
from services.ai.scheduler import RateLimitedScheduler
from services.document_store import DocumentStore


@pytest.fixture
def settings() -> Settings:
    """Fast settings: no spacing between dispatches, no retry pauses."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        ENVIRONMENT="test",
        GENERATION_MIN_DELAY_SECONDS=0.0,
        GENERATION_RETRY_DELAY_SECONDS=0.0,
        GENERATION_RATE_LIMIT_PENALTY_SECONDS=0.0,
        GENERATION_TIMEOUT_PENALTY_SECONDS=0.0,
        LINK_PROBE_PAUSE_SECONDS=0.0,
        JUSTIFICATION_DELAY_SECONDS=0.0,
    )


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[DocumentStore, None]:
    """In-memory document store shared across one test."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    document_store = DocumentStore.from_engine(engine)
    await document_store.create_schema()
    yield document_store
    await document_store.dispose()


class FakeClock:
    """Manual clock whose sleep just advances time."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


def fake_client(*texts: str | BaseException) -> MagicMock:
    """Generative client stand-in returning (or raising) each item in order."""
    client = MagicMock()
    client.credentials.side_effect = lambda: nullcontext()
    client.generate = AsyncMock(
        side_effect=[
            item
            if isinstance(item, BaseException)
            else RawGeneration(text=item, model_name="gemini-test")
            for item in texts
        ]
    )
    return client


@pytest.fixture
def make_scheduler(
    settings: Settings, fake_clock: FakeClock
) -> Callable[..., RateLimitedScheduler]:
    def factory(*texts: str | BaseException) -> RateLimitedScheduler:
        return RateLimitedScheduler(
            fake_client(*texts), settings, clock=fake_clock, sleep=fake_clock.sleep
        )

    return factory


@pytest.fixture
def make_client() -> Callable[..., MagicMock]:
    return fake_client

"""Tests for exam preparation tips."""

import json
from collections.abc import Callable
from typing import Any

import pytest

from services.ai.exceptions import ProtocolError
from services.ai.scheduler import RateLimitedScheduler
from services.document_store import DocumentStore
from services.tips_service import TipsService, build_tip, tip_matches_subject


FULL_TIP = {
    "title": "Lee la pregunta antes que el texto",
    "description": "Saber qué se pregunta te ayuda a leer con propósito.",
    "subject": "Lectura Crítica",
    "topic": "Inferencia",
    "level": "Básico",
    "category": "Estrategia",
    "example": "Subraya el verbo del enunciado antes de leer.",
    "recommendation": "En tu próximo simulacro, lee primero los enunciados.",
    "tags": ["icfes", "saber11", "lectura"],
}
MINIMAL_TIP = {
    "title": "Controla el tiempo",
    "description": "No gastes más de 90 segundos por pregunta.",
    "category": "Tiempo",
}


def tips_response(*items: Any) -> str:
    return json.dumps({"tips": list(items)}, ensure_ascii=False)


async def add_tip(
    store: DocumentStore, doc_id: str, subject: str = "General", **extra: Any
) -> None:
    await store.set(
        f"TipsIA/{doc_id}",
        {
            "title": f"Tip {doc_id}",
            "description": "Descripción",
            "subject": subject,
            "category": "Estrategia",
            "createdAt": 1700000000000,
            "active": True,
            **extra,
        },
    )


@pytest.fixture
def make_service(
    store: DocumentStore, make_scheduler: Callable[..., RateLimitedScheduler]
) -> Callable[..., TipsService]:
    def factory(*texts: str | BaseException) -> TipsService:
        return TipsService(store, make_scheduler(*texts))

    return factory


@pytest.mark.parametrize(
    ("tip_subject", "subject", "expected"),
    [
        ("Ciencias Naturales", "Biología", True),
        ("Física", "Física", True),
        ("Lectura Crítica", "Lenguaje", True),
        ("Inglés", "Inglés", True),
        ("General", "Quimica", True),
        ("Matemáticas", "Biologia", False),
        ("", "Matemáticas", False),
    ],
)
def test_tip_matches_subject(tip_subject: str, subject: str, expected: bool) -> None:
    assert tip_matches_subject(tip_subject, subject) is expected


def test_build_tip_fills_defaults() -> None:
    tip = build_tip(MINIMAL_TIP, created_at=5)

    assert tip is not None
    assert (tip.subject, tip.topic, tip.level) == ("General", "General", "Medio")
    assert tip.tags == ["icfes"]
    assert tip.example is None


@pytest.mark.parametrize(
    "item", [{**MINIMAL_TIP, "title": "  "}, {"title": "Solo título"}, "texto"]
)
def test_build_tip_rejects_incomplete_items(item: Any) -> None:
    assert build_tip(item, created_at=5) is None


class TestGenerateTips:
    @pytest.mark.asyncio
    async def test_valid_tips_are_saved_and_invalid_skipped(
        self, store: DocumentStore, make_service: Callable[..., TipsService]
    ) -> None:
        service = make_service(
            tips_response(FULL_TIP, MINIMAL_TIP, {"description": "sin título"}, 7)
        )

        result = await service.generate_and_save_tips(count=4)

        assert (result.saved, result.skipped) == (2, 2)
        documents = await store.list_collection("TipsIA")
        by_title = {d.data["title"]: d.data for d in documents}
        assert set(by_title) == {FULL_TIP["title"], MINIMAL_TIP["title"]}
        full = by_title[FULL_TIP["title"]]
        assert full["tags"] == ["icfes", "saber11", "lectura"]
        assert full["recommendation"] == FULL_TIP["recommendation"]
        minimal = by_title[MINIMAL_TIP["title"]]
        assert minimal["subject"] == "General"
        assert minimal["level"] == "Medio"
        assert minimal["createdBy"] == "gemini"
        assert minimal["active"] is True
        assert minimal["createdAt"] > 0
        assert "example" not in minimal
        assert "id" not in minimal

    @pytest.mark.asyncio
    async def test_dry_run_saves_nothing(
        self, store: DocumentStore, make_service: Callable[..., TipsService]
    ) -> None:
        service = make_service(tips_response(FULL_TIP, {"title": "incompleto"}))

        result = await service.generate_and_save_tips(dry_run=True)

        assert (result.saved, result.skipped) == (0, 1)
        assert await store.list_collection("TipsIA") == []

    @pytest.mark.asyncio
    async def test_count_is_capped(
        self, make_service: Callable[..., TipsService]
    ) -> None:
        service = make_service(tips_response(FULL_TIP))

        await service.generate_and_save_tips(count=50, categories=["Tiempo"])

        prompt = service.scheduler.client.generate.await_args.args[0]
        assert "Genera exactamente 20 elementos" in prompt
        assert "Categorías a repartir: Tiempo\n" in prompt

    @pytest.mark.asyncio
    async def test_response_without_json_raises(
        self, store: DocumentStore, make_service: Callable[..., TipsService]
    ) -> None:
        service = make_service("No tengo consejos hoy.")

        with pytest.raises(ProtocolError):
            await service.generate_and_save_tips()
        assert await store.list_collection("TipsIA") == []

    @pytest.mark.asyncio
    async def test_tips_field_must_be_a_list(
        self, make_service: Callable[..., TipsService]
    ) -> None:
        service = make_service(json.dumps({"tips": "uno, dos"}))

        with pytest.raises(ProtocolError):
            await service.generate_and_save_tips()


class TestRetrieveTips:
    @pytest.mark.asyncio
    async def test_random_tips_are_capped_and_active_only(
        self, store: DocumentStore, make_service: Callable[..., TipsService]
    ) -> None:
        for index in range(25):
            await add_tip(store, f"t{index:02d}")
        await add_tip(store, "off", active=False)
        service = make_service()

        tips = await service.get_random_tips(limit=100)

        assert len(tips) == 20
        assert len({t.id for t in tips}) == 20
        assert "off" not in {t.id for t in tips}
        assert len(await service.get_random_tips(limit=0)) == 1

    @pytest.mark.asyncio
    async def test_small_set_is_returned_whole(
        self, store: DocumentStore, make_service: Callable[..., TipsService]
    ) -> None:
        for doc_id in ("a", "b", "c"):
            await add_tip(store, doc_id)

        tips = await make_service().get_random_tips()

        assert [t.id for t in tips] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_tips_by_subject(
        self, store: DocumentStore, make_service: Callable[..., TipsService]
    ) -> None:
        await add_tip(store, "nat", "Ciencias Naturales")
        await add_tip(store, "mat", "Matemáticas")
        await add_tip(store, "gen", "General")
        await add_tip(store, "eng", "Inglés")
        await add_tip(store, "bad", "Ciencias Naturales", title=None)
        service = make_service()

        tips = await service.get_tips_by_subject("Biología")

        assert sorted(t.id for t in tips) == ["gen", "nat"]
        assert len(await service.get_tips_by_subject("Biología", limit=1)) == 1

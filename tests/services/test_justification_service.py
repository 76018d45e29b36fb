"""Tests for justification generation over the question bank."""

import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from core.config import Settings
from schemas.justification import (
    AIJustification,
    BatchProcessingConfig,
    IncorrectAnswerExplanation,
    QuestionFilters,
    QuestionGenerationData,
)
from services.ai.models import Attachment
from services.ai.scheduler import RateLimitedScheduler
from services.document_store import DocumentStore
from services.justification_service import (
    JUSTIFICATION_FIELD,
    PAUSE_BETWEEN_BATCHES_SECONDS,
    JustificationService,
    question_images,
    validate_justification,
)


GOOD_RESPONSE = json.dumps(
    {
        "correctAnswerExplanation": (
            "La opción B es la respuesta porque al sumar dos unidades con otras "
            "dos se obtienen exactamente cuatro unidades."
        ),
        "incorrectAnswersExplanation": [
            {"optionId": "A", "explanation": "Tres resulta de olvidar una unidad."},
            {"optionId": "C", "explanation": "Cinco suma una unidad de más al total."},
            {
                "optionId": "D",
                "explanation": "Veintidós concatena los dígitos en lugar de sumar.",
            },
        ],
        "keyConcepts": ["suma", "números naturales", "conteo"],
        "perceivedDifficulty": "Fácil",
        "confidence": 0.92,
    },
    ensure_ascii=False,
)


def question_doc(code: str, **overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "code": code,
        "subject": "Matemáticas",
        "topic": "Álgebra y Cálculo",
        "level": "Medio",
        "grade": "1",
        "questionText": "¿Cuánto es 2 + 2?",
        "options": [
            {"id": "A", "text": "3"},
            {"id": "B", "text": "4", "isCorrect": True},
            {"id": "C", "text": "5"},
            {"id": "D", "text": "22"},
        ],
    }
    data.update(overrides)
    return data


def stored_justification(confidence: float = 0.9) -> dict[str, Any]:
    return {
        "correctAnswerExplanation": "x" * 60,
        "incorrectAnswersExplanation": [
            {"optionId": o, "explanation": "y" * 40} for o in ("A", "C", "D")
        ],
        "keyConcepts": ["suma", "conteo"],
        "perceivedDifficulty": "Medio",
        "generatedAt": "2026-01-01T00:00:00+00:00",
        "generatedBy": "gemini-test",
        "confidence": confidence,
        "promptVersion": "2.5.0",
    }


async def add_question(
    store: DocumentStore, question_id: str, **overrides: Any
) -> None:
    await store.set(
        JustificationService.question_path(question_id),
        question_doc(question_id.upper(), **overrides),
    )


@pytest.fixture
def make_service(
    store: DocumentStore,
    settings: Settings,
    make_scheduler: Callable[..., RateLimitedScheduler],
) -> Callable[..., JustificationService]:
    def factory(*texts: str | BaseException, **kwargs: Any) -> JustificationService:
        kwargs.setdefault("image_fetcher", AsyncMock(return_value=[]))
        kwargs.setdefault("sleep", AsyncMock())
        return JustificationService(store, make_scheduler(*texts), settings, **kwargs)

    return factory


@pytest.mark.asyncio
async def test_generate_and_save_persists_on_question(
    store: DocumentStore, make_service: Callable[..., JustificationService]
) -> None:
    await add_question(store, "q1")
    service = make_service(GOOD_RESPONSE)

    result = await service.generate_and_save("q1")

    assert result.success is True
    assert result.justification is not None
    assert result.justification.confidence == pytest.approx(0.92)
    assert result.justification.generated_by == "gemini-test"
    stored = await store.get("superate/auth/questions/q1")
    assert stored is not None
    assert stored["code"] == "Q1"
    assert stored[JUSTIFICATION_FIELD]["keyConcepts"] == [
        "suma",
        "números naturales",
        "conteo",
    ]
    assert stored[JUSTIFICATION_FIELD]["synthesized"] is False
    assert "updatedAt" in stored


@pytest.mark.asyncio
async def test_existing_justification_is_kept_without_force(
    store: DocumentStore, make_service: Callable[..., JustificationService]
) -> None:
    await add_question(store, "q1", aiJustification=stored_justification())
    service = make_service()

    result = await service.generate_and_save("q1")

    assert result.success is True
    assert result.justification is not None
    assert result.justification.generated_by == "gemini-test"
    service.scheduler.client.generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_regenerate_replaces_existing(
    store: DocumentStore, make_service: Callable[..., JustificationService]
) -> None:
    await add_question(store, "q1", aiJustification=stored_justification(0.5))
    service = make_service(GOOD_RESPONSE)

    result = await service.regenerate_justification("q1")

    assert result.success is True
    stored = await store.get("superate/auth/questions/q1")
    assert stored is not None
    assert stored[JUSTIFICATION_FIELD]["confidence"] == pytest.approx(0.92)


@pytest.mark.asyncio
async def test_missing_question(
    make_service: Callable[..., JustificationService],
) -> None:
    result = await make_service().generate_and_save("nope")
    assert result.success is False
    assert result.error_code == "question_not_found"


@pytest.mark.asyncio
async def test_question_without_correct_option(
    store: DocumentStore, make_service: Callable[..., JustificationService]
) -> None:
    await add_question(store, "q1", options=[{"id": "A", "text": "3"}])
    service = make_service()

    result = await service.generate_and_save("q1")

    assert result.success is False
    assert result.error_code == "invalid_question"
    assert result.error == "No se encontró la opción correcta"
    service.scheduler.client.generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_unparseable_answer_is_reported_not_saved(
    store: DocumentStore, make_service: Callable[..., JustificationService]
) -> None:
    await add_question(store, "q1")
    service = make_service("Lo siento, no puedo responder eso.")

    result = await service.generate_and_save("q1")

    assert result.success is False
    assert result.error_code == "no_json_structure"
    stored = await store.get("superate/auth/questions/q1")
    assert stored is not None
    assert JUSTIFICATION_FIELD not in stored


@pytest.mark.asyncio
async def test_missing_option_explanations_are_synthesized(
    store: DocumentStore, make_service: Callable[..., JustificationService]
) -> None:
    await add_question(store, "q1")
    response = json.dumps(
        {
            "correctAnswerExplanation": "B porque dos más dos son cuatro unidades.",
            "incorrectAnswersExplanation": [],
        }
    )
    result = await make_service(response).generate_and_save("q1")

    assert result.success is True
    assert result.justification is not None
    assert result.justification.synthesized is True
    explanations = result.justification.incorrect_answers_explanation
    assert [e.option_id for e in explanations] == ["A", "C", "D"]
    assert result.justification.perceived_difficulty == "Medio"


@pytest.mark.asyncio
async def test_images_are_attached_with_labels(
    store: DocumentStore, make_service: Callable[..., JustificationService]
) -> None:
    await add_question(
        store,
        "q1",
        informativeImages=["https://img.test/info.png"],
        options=[
            {"id": "A", "text": "3"},
            {"id": "B", "text": "4", "isCorrect": True},
            {"id": "C", "imageUrl": "https://img.test/c.png"},
        ],
    )
    attachment = Attachment(
        mime_type="image/png", data=b"png", context_label="Imagen de la opción C"
    )
    fetcher = AsyncMock(return_value=[attachment])
    response = json.dumps(
        {
            "correctAnswerExplanation": "B es la suma correcta de dos y dos.",
            "incorrectAnswersExplanation": [
                {"optionId": "A", "explanation": "Resta una unidad."},
                {"optionId": "C", "explanation": "La figura muestra cinco."},
            ],
        }
    )
    service = make_service(response, image_fetcher=fetcher)

    result = await service.generate_and_save("q1")

    assert result.success is True
    fetcher.assert_awaited_once_with(
        [
            (
                "https://img.test/info.png",
                "Imagen informativa 1 (contexto de la pregunta)",
            ),
            ("https://img.test/c.png", "Imagen de la opción C"),
        ]
    )
    prompt, attachments = service.scheduler.client.generate.call_args[0]
    assert "1. Imagen de la opción C" in prompt
    assert attachments == [attachment]


class TestBatches:
    @pytest.mark.asyncio
    async def test_batch_continues_after_failure(
        self, store: DocumentStore, make_service: Callable[..., JustificationService]
    ) -> None:
        await add_question(store, "q0", aiJustification=stored_justification())
        for question_id in ("q1", "q2", "q3"):
            await add_question(store, question_id)
        sleep = AsyncMock()
        service = make_service(GOOD_RESPONSE, "sin json", GOOD_RESPONSE, sleep=sleep)

        result = await service.process_batch(
            BatchProcessingConfig(batch_size=10, delay_between_items_ms=250)
        )

        assert result.total_processed == 3
        assert result.successful == 2
        assert result.failed == 1
        assert result.errors[0].question_code == "Q2"
        assert result.errors[0].error_code == "no_json_structure"
        assert result.unrecoverable == 0
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)
        assert result.end_time is not None

    @pytest.mark.asyncio
    async def test_permission_denied_fails_only_that_question(
        self, store: DocumentStore, make_service: Callable[..., JustificationService]
    ) -> None:
        await add_question(store, "q1")
        await add_question(store, "q2")
        service = make_service(Exception("403 PERMISSION_DENIED"), GOOD_RESPONSE)

        result = await service.process_batch(BatchProcessingConfig(batch_size=10))

        assert result.total_processed == 2
        assert result.successful == 1
        assert result.failed == 1
        assert result.unrecoverable == 1
        error = result.errors[0]
        assert error.question_code == "Q1"
        assert error.error_code == "permission_denied"
        assert "roles/aiplatform.user" in error.error
        stored = await store.get("superate/auth/questions/q2")
        assert stored is not None
        assert JUSTIFICATION_FIELD in stored

    @pytest.mark.asyncio
    async def test_dry_run_generates_nothing(
        self, store: DocumentStore, make_service: Callable[..., JustificationService]
    ) -> None:
        await add_question(store, "q1")
        await add_question(store, "q2")
        service = make_service()

        result = await service.process_batch(
            BatchProcessingConfig(batch_size=10, dry_run=True)
        )

        assert result.total_processed == 2
        assert result.skipped == 2
        service.scheduler.client.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batch_respects_filters(
        self, store: DocumentStore, make_service: Callable[..., JustificationService]
    ) -> None:
        await add_question(store, "q1", subject="Física")
        await add_question(store, "q2")
        service = make_service(GOOD_RESPONSE)

        result = await service.process_batch(
            BatchProcessingConfig(
                batch_size=10,
                delay_between_items_ms=0,
                filters=QuestionFilters(subject="Física"),
            )
        )

        assert result.successful == 1
        stored = await store.get("superate/auth/questions/q2")
        assert stored is not None
        assert JUSTIFICATION_FIELD not in stored

    @pytest.mark.asyncio
    async def test_process_all_runs_until_short_batch(
        self, store: DocumentStore, make_service: Callable[..., JustificationService]
    ) -> None:
        for question_id in ("q1", "q2", "q3"):
            await add_question(store, question_id)
        sleep = AsyncMock()
        service = make_service(*[GOOD_RESPONSE] * 3, sleep=sleep)

        result = await service.process_all(
            BatchProcessingConfig(batch_size=2, delay_between_items_ms=0)
        )

        assert result.total_processed == 3
        assert result.successful == 3
        sleep.assert_awaited_once_with(PAUSE_BETWEEN_BATCHES_SECONDS)
        assert await service.get_questions_without_justification() == []

    @pytest.mark.asyncio
    async def test_process_all_stops_when_nothing_succeeds(
        self, store: DocumentStore, make_service: Callable[..., JustificationService]
    ) -> None:
        for question_id in ("q1", "q2", "q3", "q4"):
            await add_question(store, question_id)
        service = make_service("nada", "nada")

        result = await service.process_all(
            BatchProcessingConfig(batch_size=2, delay_between_items_ms=0)
        )

        assert result.total_processed == 2
        assert result.failed == 2
        assert service.scheduler.client.generate.await_count == 2


class TestReporting:
    @pytest.mark.asyncio
    async def test_stats(
        self, store: DocumentStore, make_service: Callable[..., JustificationService]
    ) -> None:
        await add_question(store, "q1", aiJustification=stored_justification(0.8))
        await add_question(store, "q2", aiJustification=stored_justification(0.6))
        await add_question(store, "q3", subject="Física", level=None)
        service = make_service()

        stats = await service.get_stats()

        assert stats.total == 3
        assert stats.with_justification == 2
        assert stats.without_justification == 1
        assert stats.average_confidence == pytest.approx(0.7)
        assert stats.by_subject["Matemáticas"].with_justification == 2
        assert stats.by_subject["Física"].total == 1
        assert stats.by_level["N/A"].total == 1
        assert stats.by_grade["1"].total == 3

    @pytest.mark.asyncio
    async def test_validate_all(
        self, store: DocumentStore, make_service: Callable[..., JustificationService]
    ) -> None:
        await add_question(store, "q1", aiJustification=stored_justification())
        short = stored_justification()
        short["correctAnswerExplanation"] = "Es correcta."
        await add_question(store, "q2", aiJustification=short)
        await add_question(store, "q3")

        report = await make_service().validate_all_justifications()

        assert report.total == 2
        assert report.valid == 1
        assert report.invalid == 1
        assert report.results[1].question_code == "Q2"

    @pytest.mark.asyncio
    async def test_delete_justification(
        self, store: DocumentStore, make_service: Callable[..., JustificationService]
    ) -> None:
        await add_question(store, "q1", aiJustification=stored_justification())
        await make_service().delete_justification("q1")

        stored = await store.get("superate/auth/questions/q1")
        assert stored is not None
        assert JUSTIFICATION_FIELD not in stored
        assert stored["code"] == "Q1"


class TestValidateJustification:
    question = QuestionGenerationData.from_document("q1", question_doc("Q1"))

    def _justification(self, **overrides: Any) -> AIJustification:
        fields: dict[str, Any] = {
            "correct_answer_explanation": "x" * 120,
            "incorrect_answers_explanation": [
                IncorrectAnswerExplanation(option_id=o, explanation="y" * 40)
                for o in ("A", "C", "D")
            ],
            "key_concepts": ["suma", "conteo"],
            "generated_at": datetime.now(UTC),
            "generated_by": "gemini-test",
            "confidence": 0.9,
            "prompt_version": "2.5.0",
        }
        fields.update(overrides)
        return AIJustification(**fields)

    def test_complete_justification_is_valid(self) -> None:
        validation = validate_justification(self._justification(), self.question)
        assert validation.is_valid is True
        assert validation.issues == []
        assert validation.suggestions == []

    def test_short_and_missing_explanations(self) -> None:
        justification = self._justification(
            correct_answer_explanation="Corto",
            incorrect_answers_explanation=[
                IncorrectAnswerExplanation(option_id="A", explanation="breve")
            ],
        )
        validation = validate_justification(justification, self.question)
        assert validation.is_valid is False
        assert validation.issues == [
            "La explicación de la respuesta correcta es muy corta o inexistente",
            "No hay explicaciones para todas las opciones incorrectas",
            "La explicación de la opción A es muy corta",
        ]

    def test_suggestions_do_not_invalidate(self) -> None:
        justification = self._justification(
            correct_answer_explanation="La B es correcta " + "z" * 40,
            key_concepts=["suma"],
            confidence=0.5,
        )
        validation = validate_justification(justification, self.question)
        assert validation.is_valid is True
        assert len(validation.suggestions) == 3


def test_question_images_order_and_labels() -> None:
    data = QuestionGenerationData.from_document(
        "q1",
        question_doc(
            "Q1",
            informativeImages=["i1", "i2"],
            questionImages=["p1"],
            options=[{"id": "A", "imageUrl": "a1", "isCorrect": True}],
        ),
    )
    assert question_images(data) == [
        ("i1", "Imagen informativa 1 (contexto de la pregunta)"),
        ("i2", "Imagen informativa 2 (contexto de la pregunta)"),
        ("p1", "Imagen de la pregunta 1"),
        ("a1", "Imagen de la opción A"),
    ]

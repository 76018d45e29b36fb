"""Generate, validate and persist AI justifications for bank questions.

Questions live under ``superate/auth/questions/{id}``; a justification is
stored on the question document as ``aiJustification``. Per-question
failures are reported in the returned result objects. Only errors that make
every further request pointless (missing permissions, no client) propagate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from core.config import Settings, get_settings
from schemas.justification import (
    AIJustification,
    BatchItemError,
    BatchProcessingConfig,
    BatchProcessingResult,
    CoverageCount,
    IncorrectAnswerExplanation,
    JustificationGenerationResult,
    JustificationStats,
    JustificationValidation,
    QuestionFilters,
    QuestionGenerationData,
    ValidationReport,
    ValidationReportItem,
)
from services.ai.exceptions import (
    ClientConnectionError,
    ClientNotConnectedError,
    FatalError,
    PipelineError,
)
from services.ai.image_fetch import fetch_images
from services.ai.models import Attachment, GenerationRequest, GenerationResult
from services.ai.prompts import build_justification_prompt
from services.ai.response_extractor import (
    ExtractionFailure,
    ExtractionSchema,
    PartialFieldSpec,
    PlaceholderSpec,
    extract,
)
from services.ai.scheduler import RateLimitedScheduler
from services.document_store import Document, DocumentStore


logger = logging.getLogger(__name__)

QUESTIONS_COLLECTION = "superate/auth/questions"
JUSTIFICATION_FIELD = "aiJustification"

MIN_CORRECT_EXPLANATION_LENGTH = 50
MIN_OPTION_EXPLANATION_LENGTH = 30
MIN_KEY_CONCEPTS = 2
LOW_CONFIDENCE = 0.7
GENERIC_PHRASES = ("es correcta", "es incorrecta", "no es válida")
# Generic phrases only matter in explanations shorter than this
GENERIC_LENGTH_LIMIT = 100
DEFAULT_CONFIDENCE = 0.85
PARTIAL_CONFIDENCE = 0.75
PAUSE_BETWEEN_BATCHES_SECONDS = 5

# Errors that make every later question fail the same way
UNRECOVERABLE_ERRORS = (FatalError, ClientNotConnectedError, ClientConnectionError)

ImageFetcher = Callable[[Sequence[tuple[str, str]]], Awaitable[list[Attachment]]]


def justification_schema(data: QuestionGenerationData) -> ExtractionSchema:
    """Extraction schema for a justification answer to ``data``."""
    incorrect_ids = tuple(option.id for option in data.incorrect_options)
    return ExtractionSchema(
        required_fields=("correctAnswerExplanation", "incorrectAnswersExplanation"),
        defaults={
            "keyConcepts": [],
            "confidence": DEFAULT_CONFIDENCE,
            "perceivedDifficulty": data.level,
        },
        placeholder=PlaceholderSpec(
            field="incorrectAnswersExplanation", option_ids=incorrect_ids
        ),
        partial=PartialFieldSpec(
            text_field="correctAnswerExplanation",
            record_field="incorrectAnswersExplanation",
            defaults={
                "keyConcepts": [],
                "perceivedDifficulty": data.level,
                "confidence": PARTIAL_CONFIDENCE,
            },
        ),
    )


def question_images(data: QuestionGenerationData) -> list[tuple[str, str]]:
    """Image URLs of a question with a label describing where each appears."""
    images = [
        (url, f"Imagen informativa {i} (contexto de la pregunta)")
        for i, url in enumerate(data.informative_images, 1)
    ]
    images += [
        (url, f"Imagen de la pregunta {i}")
        for i, url in enumerate(data.question_images, 1)
    ]
    images += [
        (option.image_url, f"Imagen de la opción {option.id}")
        for option in data.options
        if option.image_url
    ]
    return images


def _coerce_confidence(value: Any, default: float) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(confidence, 0.0), 1.0)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def validate_justification(
    justification: AIJustification, question: QuestionGenerationData
) -> JustificationValidation:
    """Quality checks; ``issues`` invalidate, ``suggestions`` only advise."""
    issues: list[str] = []
    suggestions: list[str] = []

    correct = justification.correct_answer_explanation or ""
    if len(correct) < MIN_CORRECT_EXPLANATION_LENGTH:
        issues.append(
            "La explicación de la respuesta correcta es muy corta o inexistente"
        )

    if len(justification.incorrect_answers_explanation) != len(
        question.incorrect_options
    ):
        issues.append("No hay explicaciones para todas las opciones incorrectas")

    for item in justification.incorrect_answers_explanation:
        if len(item.explanation or "") < MIN_OPTION_EXPLANATION_LENGTH:
            issues.append(
                f"La explicación de la opción {item.option_id} es muy corta"
            )

    if len(justification.key_concepts) < MIN_KEY_CONCEPTS:
        suggestions.append("Se recomienda añadir más conceptos clave (mínimo 2-3)")

    if justification.confidence < LOW_CONFIDENCE:
        suggestions.append(
            "La confianza es baja, considera regenerar la justificación"
        )

    lowered = correct.lower()
    if len(correct) < GENERIC_LENGTH_LIMIT and any(
        phrase in lowered for phrase in GENERIC_PHRASES
    ):
        suggestions.append(
            "Las explicaciones parecen genéricas, considera regenerar para más "
            "profundidad"
        )

    return JustificationValidation(
        is_valid=not issues, issues=issues, suggestions=suggestions
    )


class JustificationService:
    """Orchestrates justification generation over the question bank."""

    def __init__(
        self,
        store: DocumentStore,
        scheduler: RateLimitedScheduler,
        settings: Settings | None = None,
        *,
        image_fetcher: ImageFetcher = fetch_images,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self._fetch_images = image_fetcher
        self._sleep = sleep

    # -- question access -------------------------------------------------

    @staticmethod
    def question_path(question_id: str) -> str:
        return f"{QUESTIONS_COLLECTION}/{question_id}"

    async def get_question(self, question_id: str) -> dict[str, Any] | None:
        return await self.store.get(self.question_path(question_id))

    async def get_questions(
        self, filters: QuestionFilters | None = None
    ) -> list[Document]:
        """Stored questions matching ``filters``; filtering happens in Python."""
        filters = filters or QuestionFilters()
        required = filters.equality_filters()
        documents = await self.store.list_collection(QUESTIONS_COLLECTION)

        matches: list[Document] = []
        for document in documents:
            data = document.data
            if any(str(data.get(k)) != str(v) for k, v in required.items()):
                continue
            has_justification = bool(data.get(JUSTIFICATION_FIELD))
            if filters.with_justification and not has_justification:
                continue
            if filters.without_justification and has_justification:
                continue
            matches.append(document)
            if filters.limit and len(matches) >= filters.limit:
                break
        return matches

    async def get_questions_without_justification(
        self, limit: int = 50, filters: QuestionFilters | None = None
    ) -> list[Document]:
        base = filters or QuestionFilters()
        return await self.get_questions(
            base.model_copy(update={"without_justification": True, "limit": limit})
        )

    async def save_justification(
        self, question_id: str, justification: AIJustification
    ) -> None:
        await self.store.set(
            self.question_path(question_id),
            {
                JUSTIFICATION_FIELD: justification.model_dump(
                    mode="json", by_alias=True
                ),
                "updatedAt": datetime.now(UTC).isoformat(),
            },
        )

    async def delete_justification(self, question_id: str) -> None:
        path = self.question_path(question_id)
        data = await self.store.get(path)
        if data is None or JUSTIFICATION_FIELD not in data:
            return
        data.pop(JUSTIFICATION_FIELD)
        data["updatedAt"] = datetime.now(UTC).isoformat()
        await self.store.set(path, data, merge=False)
        logger.info("Deleted justification of question %s", question_id)

    # -- generation ------------------------------------------------------

    async def generate_justification(
        self, question: QuestionGenerationData
    ) -> JustificationGenerationResult:
        """Generate (but do not persist) a justification for one question."""
        start = time.perf_counter()
        try:
            justification = await self._generate(question)
        except UNRECOVERABLE_ERRORS:
            raise
        except PipelineError as exc:
            logger.warning(
                "Justification for %s failed (%s): %s",
                question.question_code or question.question_id,
                exc.error_code,
                exc.message,
            )
            return JustificationGenerationResult(
                success=False,
                question_id=question.question_id,
                error=exc.message,
                error_code=exc.error_code,
                processing_time_ms=_elapsed_ms(start),
            )
        except ValueError as exc:
            logger.warning(
                "Justification for %s rejected: %s",
                question.question_code or question.question_id,
                exc,
            )
            return JustificationGenerationResult(
                success=False,
                question_id=question.question_id,
                error=str(exc),
                error_code="invalid_question",
                processing_time_ms=_elapsed_ms(start),
            )

        return JustificationGenerationResult(
            success=True,
            question_id=question.question_id,
            justification=justification,
            processing_time_ms=_elapsed_ms(start),
        )

    async def _generate(self, question: QuestionGenerationData) -> AIJustification:
        if question.correct_option is None:
            raise ValueError("No se encontró la opción correcta")

        attachments = await self._fetch_images(question_images(question))
        prompt = build_justification_prompt(
            question, [a.context_label for a in attachments]
        )
        result = await self.scheduler.execute(
            GenerationRequest(
                prompt=prompt,
                attachments=tuple(attachments),
                max_retries=self.settings.GENERATION_MAX_RETRIES,
            )
        )
        outcome = extract(result.text, justification_schema(question))
        if isinstance(outcome, ExtractionFailure):
            raise outcome.to_error()

        if outcome.synthesized:
            logger.warning(
                "Justification for %s uses placeholder option explanations",
                question.question_code or question.question_id,
            )
        return self._build_justification(
            outcome.data, result, question, synthesized=outcome.synthesized
        )

    def _build_justification(
        self,
        parsed: dict[str, Any],
        result: GenerationResult,
        question: QuestionGenerationData,
        *,
        synthesized: bool,
    ) -> AIJustification:
        explanations = [
            IncorrectAnswerExplanation(
                option_id=str(item["optionId"]), explanation=str(item["explanation"])
            )
            for item in parsed["incorrectAnswersExplanation"]
            if isinstance(item, dict) and "optionId" in item and "explanation" in item
        ]
        return AIJustification(
            correct_answer_explanation=str(parsed["correctAnswerExplanation"]),
            incorrect_answers_explanation=explanations,
            key_concepts=_string_list(parsed.get("keyConcepts")),
            perceived_difficulty=str(
                parsed.get("perceivedDifficulty") or question.level
            ),
            generated_at=result.metadata.timestamp,
            generated_by=result.metadata.model,
            confidence=_coerce_confidence(parsed.get("confidence"), DEFAULT_CONFIDENCE),
            prompt_version=result.metadata.prompt_version,
            synthesized=synthesized,
        )

    async def generate_and_save(
        self, question_id: str, *, force: bool = False
    ) -> JustificationGenerationResult:
        data = await self.get_question(question_id)
        if data is None:
            return JustificationGenerationResult(
                success=False,
                question_id=question_id,
                error="Pregunta no encontrada",
                error_code="question_not_found",
            )

        existing = data.get(JUSTIFICATION_FIELD)
        if existing and not force:
            logger.info(
                "Question %s already has a justification (use force to regenerate)",
                data.get("code", question_id),
            )
            return JustificationGenerationResult(
                success=True,
                question_id=question_id,
                justification=AIJustification.model_validate(existing),
            )

        question = QuestionGenerationData.from_document(question_id, data)
        result = await self.generate_justification(question)
        if result.success and result.justification is not None:
            await self.save_justification(question_id, result.justification)
            logger.info("Saved justification for %s", question.question_code)
        return result

    async def regenerate_justification(
        self, question_id: str
    ) -> JustificationGenerationResult:
        logger.info("Regenerating justification for %s", question_id)
        return await self.generate_and_save(question_id, force=True)

    # -- batches ---------------------------------------------------------

    async def process_batch(
        self, config: BatchProcessingConfig
    ) -> BatchProcessingResult:
        """Generate justifications for one batch of questions lacking one."""
        result = BatchProcessingResult(start_time=datetime.now(UTC))
        start = time.perf_counter()

        documents = await self.get_questions_without_justification(
            config.batch_size, config.filters
        )
        logger.info("Found %d question(s) without justification", len(documents))

        for index, document in enumerate(documents, 1):
            code = str(document.data.get("code") or document.doc_id)
            result.total_processed += 1

            if config.dry_run:
                logger.info("[%d/%d] Would process %s", index, len(documents), code)
                result.skipped += 1
                continue

            logger.info("[%d/%d] Processing %s...", index, len(documents), code)
            question = QuestionGenerationData.from_document(
                document.doc_id, document.data
            )
            try:
                generation = await self.generate_justification(question)
            except UNRECOVERABLE_ERRORS as exc:
                result.failed += 1
                result.unrecoverable += 1
                result.errors.append(
                    BatchItemError(
                        question_id=document.doc_id,
                        question_code=code,
                        error=exc.message,
                        error_code=exc.error_code,
                    )
                )
                logger.error("  ❌ %s (%s): %s", code, exc.error_code, exc.message)
            else:
                await self._record(result, document.doc_id, code, generation)

            if index < len(documents) and config.delay_between_items_ms:
                await self._sleep(config.delay_between_items_ms / 1000)

        result.end_time = datetime.now(UTC)
        result.duration_ms = _elapsed_ms(start)
        logger.info(
            "Batch done: %d processed, %d ok, %d failed, %d skipped in %.1fs",
            result.total_processed,
            result.successful,
            result.failed,
            result.skipped,
            result.duration_ms / 1000,
        )
        return result

    async def _record(
        self,
        result: BatchProcessingResult,
        question_id: str,
        code: str,
        generation: JustificationGenerationResult,
    ) -> None:
        if generation.success and generation.justification is not None:
            await self.save_justification(question_id, generation.justification)
            result.successful += 1
            logger.info("  ✅ %s (%sms)", code, generation.processing_time_ms)
            return

        result.failed += 1
        result.errors.append(
            BatchItemError(
                question_id=question_id,
                question_code=code,
                error=generation.error or "Error desconocido",
                error_code=generation.error_code,
            )
        )
        logger.warning("  ❌ %s: %s", code, generation.error)

    async def process_all(
        self, config: BatchProcessingConfig
    ) -> BatchProcessingResult:
        """Run batches until one comes back short.

        Stops early after a dry run or a batch without a single success,
        since the next batch would select the same questions again.
        """
        overall = BatchProcessingResult(start_time=datetime.now(UTC))
        start = time.perf_counter()
        batch_number = 1
        while True:
            logger.info("📦 Batch %d", batch_number)
            batch = await self.process_batch(config)
            overall.absorb(batch)

            if batch.total_processed < config.batch_size:
                break
            if config.dry_run or batch.successful == 0:
                logger.warning(
                    "Stopping after batch %d: no question changed state", batch_number
                )
                break

            await self._sleep(PAUSE_BETWEEN_BATCHES_SECONDS)
            batch_number += 1

        overall.end_time = datetime.now(UTC)
        overall.duration_ms = _elapsed_ms(start)
        logger.info(
            "All batches done: %d processed, %.2f%% success",
            overall.total_processed,
            overall.success_rate,
        )
        return overall

    # -- reporting -------------------------------------------------------

    async def get_stats(
        self, filters: QuestionFilters | None = None
    ) -> JustificationStats:
        base = filters or QuestionFilters()
        documents = await self.get_questions(
            base.model_copy(
                update={
                    "with_justification": None,
                    "without_justification": None,
                    "limit": None,
                }
            )
        )

        stats = JustificationStats(total=len(documents))
        confidences: list[float] = []
        for document in documents:
            data = document.data
            justification = data.get(JUSTIFICATION_FIELD)
            has_justification = bool(justification)
            if has_justification:
                stats.with_justification += 1
                confidence = justification.get("confidence")
                if isinstance(confidence, int | float) and confidence > 0:
                    confidences.append(float(confidence))
            else:
                stats.without_justification += 1

            for bucket, key in (
                (stats.by_subject, data.get("subject")),
                (stats.by_level, data.get("level")),
                (stats.by_grade, data.get("grade")),
            ):
                counts = bucket.setdefault(str(key or "N/A"), CoverageCount())
                counts.total += 1
                if has_justification:
                    counts.with_justification += 1

        if confidences:
            stats.average_confidence = sum(confidences) / len(confidences)
        return stats

    async def validate_all_justifications(
        self, filters: QuestionFilters | None = None
    ) -> ValidationReport:
        base = filters or QuestionFilters()
        documents = await self.get_questions(
            base.model_copy(update={"with_justification": True})
        )
        items: list[ValidationReportItem] = []
        for document in documents:
            question = QuestionGenerationData.from_document(
                document.doc_id, document.data
            )
            justification = AIJustification.model_validate(
                document.data[JUSTIFICATION_FIELD]
            )
            items.append(
                ValidationReportItem(
                    question_id=document.doc_id,
                    question_code=question.question_code,
                    validation=validate_justification(justification, question),
                )
            )

        valid = sum(1 for item in items if item.validation.is_valid)
        logger.info(
            "Validated %d justification(s): %d valid, %d with issues",
            len(items),
            valid,
            len(items) - valid,
        )
        return ValidationReport(
            total=len(items), valid=valid, invalid=len(items) - valid, results=items
        )

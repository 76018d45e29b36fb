"""Per-phase academic summary of a student across the seven evaluated subjects."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import pydantic

from core.config import Settings, get_settings
from schemas.summary import (
    AcademicSummary,
    EvaluationResult,
    GlobalMetrics,
    PerformanceLevel,
    StudentSummary,
    SubjectTopicScore,
    SummaryGenerationResult,
    SummaryMetadata,
    TopicScore,
)
from services.ai.exceptions import (
    ClientConnectionError,
    ClientNotConnectedError,
    FatalError,
    PipelineError,
    ProtocolError,
)
from services.ai.models import GenerationRequest
from services.ai.prompts import build_summary_prompt
from services.ai.response_extractor import ExtractionFailure, ExtractionSchema, extract
from services.ai.scheduler import RateLimitedScheduler
from services.document_store import DocumentStore
from services.resources.topics import SUBJECT_TOPICS, canonical_subject_name, phase_name
from services.study_plan_service import PHASE_VARIANTS, RESULTS_ROOT


logger = logging.getLogger(__name__)

SUMMARY_ROOT = "ResumenStudent"
SUMMARY_DOC = "resumenActual"
STRONG_THRESHOLD = 70
WEAK_THRESHOLD = 60
MILD_WEAKNESS_FLOOR = 35
MILD_WEAKNESS_CEILING = 40

UNRECOVERABLE_ERRORS = (FatalError, ClientNotConnectedError, ClientConnectionError)

SUMMARY_SCHEMA = ExtractionSchema(
    required_fields=("resumen_general", "analisis_competencial"),
    defaults={
        "fortalezas_academicas": [],
        "aspectos_por_mejorar": [],
        "recomendaciones_enfoque_saber11": [],
    },
)


def _is_completed(exam: dict[str, Any]) -> bool:
    return exam.get("isCompleted") is not False and exam.get("completed") is not False


def _exam_percentage(exam: dict[str, Any]) -> float:
    score = exam.get("score")
    if isinstance(score, dict) and isinstance(
        score.get("overallPercentage"), int | float
    ):
        return float(score["overallPercentage"])
    details = exam.get("questionDetails") or []
    if not details:
        return 0.0
    correct = sum(1 for q in details if isinstance(q, dict) and q.get("isCorrect"))
    return correct / len(details) * 100


def _topic_scores(exam: dict[str, Any]) -> list[TopicScore]:
    stats: dict[str, list[int]] = {}
    for detail in exam.get("questionDetails") or []:
        if not isinstance(detail, dict):
            continue
        counts = stats.setdefault(detail.get("topic") or "Sin tema", [0, 0])
        counts[1] += 1
        if detail.get("isCorrect"):
            counts[0] += 1
    return [
        TopicScore(
            tema=topic,
            puntaje=correct / total * 100,
            nivel=PerformanceLevel.for_percentage(correct / total * 100),
            total_preguntas=total,
            correctas=correct,
        )
        for topic, (correct, total) in stats.items()
    ]


def normalize_evaluations(
    evaluations: Sequence[dict[str, Any]],
) -> list[EvaluationResult]:
    """Best completed evaluation per known subject."""
    best: dict[str, EvaluationResult] = {}
    for exam in evaluations:
        subject = canonical_subject_name(exam.get("subject") or "")
        if subject is None:
            continue
        percentage = _exam_percentage(exam)
        current = best.get(subject)
        if current is not None and current.puntaje >= percentage:
            continue
        best[subject] = EvaluationResult(
            materia=subject,
            puntaje=percentage,
            nivel=PerformanceLevel.for_percentage(percentage),
            temas=_topic_scores(exam),
        )
    return list(best.values())


def calculate_global_metrics(results: Sequence[EvaluationResult]) -> GlobalMetrics:
    if not results:
        return GlobalMetrics()

    average = sum(r.puntaje for r in results) / len(results)
    ranked = sorted(results, key=lambda r: r.puntaje, reverse=True)
    metrics = GlobalMetrics(
        promedio_general=average,
        materias_fuertes=[r.materia for r in ranked if r.puntaje >= STRONG_THRESHOLD],
        materias_debiles=[
            r.materia for r in reversed(ranked) if r.puntaje < WEAK_THRESHOLD
        ],
        nivel_general_desempeno=PerformanceLevel.for_percentage(average),
    )

    for result in results:
        for topic in result.temas:
            score = SubjectTopicScore(
                materia=result.materia, tema=topic.tema, puntaje=topic.puntaje
            )
            if topic.puntaje >= STRONG_THRESHOLD:
                metrics.temas_fuertes.append(score)
            elif topic.puntaje < WEAK_THRESHOLD:
                metrics.temas_debiles.append(score)
                if MILD_WEAKNESS_FLOOR <= topic.puntaje < MILD_WEAKNESS_CEILING:
                    metrics.debilidades_leves.append(score)
                elif topic.puntaje < MILD_WEAKNESS_FLOOR:
                    metrics.debilidades_estructurales.append(score)

    metrics.temas_fuertes.sort(key=lambda s: s.puntaje, reverse=True)
    metrics.temas_debiles.sort(key=lambda s: s.puntaje)
    metrics.debilidades_leves.sort(key=lambda s: s.puntaje, reverse=True)
    metrics.debilidades_estructurales.sort(key=lambda s: s.puntaje)
    return metrics


class StudentSummaryService:
    def __init__(
        self,
        store: DocumentStore,
        scheduler: RateLimitedScheduler,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.settings = settings or get_settings()

    @staticmethod
    def summary_path(student_id: str, phase: str) -> str:
        return f"{SUMMARY_ROOT}/{student_id}/{phase}/{SUMMARY_DOC}"

    async def get_student_evaluations(
        self, student_id: str, phase: str
    ) -> list[dict[str, Any]]:
        evaluations: list[dict[str, Any]] = []
        for variant in PHASE_VARIANTS.get(phase, []):
            documents = await self.store.list_collection(
                f"{RESULTS_ROOT}/{student_id}/{variant}"
            )
            for document in documents:
                data = document.data
                if _is_completed(data) and data.get("subject"):
                    evaluations.append(
                        {**data, "examId": document.doc_id, "phase": phase}
                    )
        return evaluations

    async def has_all_evaluations(self, student_id: str, phase: str) -> bool:
        evaluations = await self.get_student_evaluations(student_id, phase)
        present = {r.materia for r in normalize_evaluations(evaluations)}
        return all(subject in present for subject in SUBJECT_TOPICS)

    async def get_summary(self, student_id: str, phase: str) -> StudentSummary | None:
        data = await self.store.get(self.summary_path(student_id, phase))
        if data is None:
            return None
        return StudentSummary.model_validate(data)

    async def generate_summary(
        self, student_id: str, phase: str, *, force: bool = False
    ) -> SummaryGenerationResult:
        start = time.perf_counter()
        logger.info("📊 Generating summary for %s, phase %s", student_id, phase)

        evaluations = await self.get_student_evaluations(student_id, phase)
        results = normalize_evaluations(evaluations)
        present = {r.materia for r in results}
        if not all(subject in present for subject in SUBJECT_TOPICS):
            return SummaryGenerationResult(
                success=False,
                error=(
                    "El estudiante no ha completado las 7 evaluaciones requeridas "
                    f"para {phase_name(phase)}"
                ),
                error_code="missing_evaluations",
            )

        if not force and await self.store.get(self.summary_path(student_id, phase)):
            return SummaryGenerationResult(
                success=False,
                error=(
                    "Ya existe un resumen vigente para esta fase. "
                    "Usa force=true para regenerarlo."
                ),
                error_code="summary_exists",
            )

        metrics = calculate_global_metrics(results)
        try:
            summary = await self._generate(student_id, phase, results, metrics)
        except UNRECOVERABLE_ERRORS:
            raise
        except PipelineError as exc:
            logger.error(
                "Summary for %s failed (%s): %s",
                student_id,
                exc.error_code,
                exc.message,
            )
            return SummaryGenerationResult(
                success=False,
                error=exc.message,
                error_code=exc.error_code,
                processing_time_ms=int((time.perf_counter() - start) * 1000),
            )

        await self.store.set(
            self.summary_path(student_id, phase), summary.model_dump(mode="json")
        )
        logger.info(
            "✅ Summary saved to %s", self.summary_path(student_id, phase)
        )
        return SummaryGenerationResult(
            success=True,
            summary=summary,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )

    async def _generate(
        self,
        student_id: str,
        phase: str,
        results: list[EvaluationResult],
        metrics: GlobalMetrics,
    ) -> StudentSummary:
        prompt = build_summary_prompt(
            phase_name(phase),
            [r.model_dump(mode="json") for r in results],
            metrics.model_dump(mode="json"),
        )
        generation = await self.scheduler.execute(
            GenerationRequest(
                prompt=prompt, max_retries=self.settings.GENERATION_MAX_RETRIES
            )
        )
        outcome = extract(generation.text, SUMMARY_SCHEMA)
        if isinstance(outcome, ExtractionFailure):
            raise outcome.to_error()
        try:
            academic = AcademicSummary.model_validate(outcome.data)
        except pydantic.ValidationError as exc:
            raise ProtocolError(
                f"Summary fields have the wrong shape: {exc.errors()[0]['msg']}",
                raw_text=generation.text,
            ) from exc

        return StudentSummary(
            student_id=student_id,
            phase=phase,
            fecha=datetime.now(UTC).date().isoformat(),
            resumen=academic,
            metadata=SummaryMetadata(
                materias_analizadas=len(results),
                modelo_ia=generation.metadata.model,
                synthesized=outcome.synthesized,
            ),
            metricas_globales=metrics,
        )

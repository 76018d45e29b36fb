"""Personalized study plans built from a student's weak topics.

Flow: exam results -> weaknesses -> Gemini plan -> per-topic videos, links
and exercises from the resource caches -> completeness check -> persist.
A plan is only written when it is complete; a partial plan is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any

import pydantic

from core.config import Settings, get_settings
from schemas.study_plan import (
    OPTION_LETTERS,
    PracticeExercise,
    StudentInfo,
    StudentWeakness,
    StudyLink,
    StudyPlan,
    StudyPlanGenerationResult,
    StudyPlanTopic,
    VideoResource,
    VideoSearchSemanticInfo,
    WeakQuestion,
)
from services.ai.exceptions import (
    ClientConnectionError,
    ClientNotConnectedError,
    CompletenessError,
    FatalError,
    GenerationTimeoutError,
    PipelineError,
)
from services.ai.models import GenerationRequest
from services.ai.prompts import build_study_plan_prompt, build_video_keywords_prompt
from services.ai.response_extractor import (
    ExtractionFailure,
    ExtractionSchema,
    extract,
)
from services.ai.scheduler import RateLimitedScheduler
from services.document_store import DocumentStore
from services.resources.resource_cache import (
    CachedResource,
    ResourceCache,
    ResourceKey,
    SearchSource,
    exercise_kind,
    link_kind,
    video_kind,
)
from services.resources.topics import (
    SUBJECT_TOPICS,
    canonical_subject_name,
    canonical_topics_with_weakness,
    grade_name,
    map_to_canonical_topic,
    normalize_for_match,
    phase_name,
    subject_topics,
)
from services.resources.validation_gate import ValidationGate
from services.resources.video_search import search_videos
from services.resources.web_search import search_pages


logger = logging.getLogger(__name__)

RESULTS_ROOT = "results"
PLANS_ROOT = "AnswerIA"
WEAKNESS_THRESHOLD = 60
EXERCISE_COUNT = 20
PLAN_TIMEOUT_SECONDS = 600.0
VIDEO_KEYWORDS_RETRIES = 2
VIDEO_KEYWORDS_TIMEOUT_SECONDS = 30.0
LINK_VALIDATION_BUDGET_FACTOR = 2

# Subcollection names under which exam results have been stored over time
PHASE_VARIANTS: dict[str, list[str]] = {
    "first": ["fase I", "Fase I", "Fase 1", "fase 1", "first"],
    "second": ["Fase II", "fase II", "Fase 2", "fase 2", "second"],
    "third": ["fase III", "Fase III", "Fase 3", "fase 3", "third"],
}

_OPTION_PREFIX = re.compile(r"^[A-D]\)\s", re.IGNORECASE)

UNRECOVERABLE_ERRORS = (FatalError, ClientNotConnectedError, ClientConnectionError)

PLAN_SCHEMA = ExtractionSchema(
    required_fields=("diagnostic_summary", "study_plan_summary"),
    defaults={"topics": [], "practice_exercises": []},
)

VIDEO_KEYWORDS_SCHEMA = ExtractionSchema(required_fields=("searchKeywords",))


def calculate_weaknesses(results: Sequence[dict[str, Any]]) -> list[StudentWeakness]:
    """Topics answered correctly less than 60 % of the time, weakest first."""
    by_topic: dict[str, list[WeakQuestion]] = {}
    for exam in results:
        for detail in exam.get("questionDetails") or []:
            if not isinstance(detail, dict):
                continue
            topic = detail.get("topic") or "Sin tema"
            by_topic.setdefault(topic, []).append(
                WeakQuestion(
                    question_id=detail.get("questionId") or "",
                    question_text=detail.get("questionText") or "",
                    topic=topic,
                    is_correct=bool(detail.get("isCorrect")),
                )
            )

    weaknesses = []
    for topic, questions in by_topic.items():
        correct = sum(1 for q in questions if q.is_correct)
        percentage = round(correct / len(questions) * 100)
        if percentage < WEAKNESS_THRESHOLD:
            weaknesses.append(
                StudentWeakness(
                    topic=topic,
                    percentage=percentage,
                    correct=correct,
                    total=len(questions),
                    questions=questions,
                )
            )
    weaknesses.sort(key=lambda w: w.percentage)
    return weaknesses


def normalize_exercise(raw: Any, index: int = 0) -> PracticeExercise | None:
    """Coerce a generated exercise into the A-D format, or None if unusable."""
    if not isinstance(raw, dict):
        return None
    problems: list[str] = []
    options = raw.get("options")
    if not isinstance(options, list) or len(options) != len(OPTION_LETTERS):
        problems.append("needs exactly 4 options")
        options = []
    for field in ("question", "correctAnswer", "explanation", "topic"):
        if not raw.get(field):
            problems.append(f"missing {field}")

    normalized_options: list[str] = []
    for letter, option in zip(OPTION_LETTERS, options):
        if not isinstance(option, str):
            problems.append(f"option {letter} is not text")
            continue
        text = option.strip()
        if not _OPTION_PREFIX.match(text):
            text = f"{letter}) {text}"
        normalized_options.append(text)

    answer = str(raw.get("correctAnswer") or "").strip().upper()[:1]
    if raw.get("correctAnswer") and answer not in OPTION_LETTERS:
        problems.append(f"invalid correctAnswer {raw.get('correctAnswer')!r}")

    if problems:
        logger.warning("Dropping exercise %d: %s", index + 1, ", ".join(problems))
        return None
    return PracticeExercise(
        question=str(raw["question"]).strip(),
        options=normalized_options,
        correct_answer=answer,
        explanation=str(raw["explanation"]).strip(),
        topic=str(raw["topic"]).strip(),
    )


def parse_topics(raw_topics: Any) -> list[StudyPlanTopic]:
    topics: list[StudyPlanTopic] = []
    if not isinstance(raw_topics, list):
        return topics
    for raw in raw_topics:
        try:
            topics.append(StudyPlanTopic.model_validate(raw))
        except pydantic.ValidationError as exc:
            logger.warning("Dropping malformed topic: %s", exc.errors()[0]["msg"])
    return topics


def check_completeness(plan: StudyPlan) -> None:
    """Raise CompletenessError unless the plan can be shown to a student."""
    if not plan.topics:
        raise CompletenessError("El plan debe tener al menos un topic")
    if not plan.practice_exercises:
        raise CompletenessError("El plan debe tener al menos un ejercicio de práctica")
    if not plan.video_resources:
        raise CompletenessError("El plan debe tener al menos un video educativo")
    if not plan.study_links:
        logger.warning("Study plan has no validated web links")

    invalid_videos = [v for v in plan.video_resources if not v.title or not v.url]
    if invalid_videos:
        raise CompletenessError(
            f"{len(invalid_videos)} video(s) sin título o URL válida"
        )
    invalid_links = [x for x in plan.study_links if not x.title or not x.url]
    if invalid_links:
        raise CompletenessError(
            f"{len(invalid_links)} enlace(s) sin título o URL válida"
        )
    incomplete = [
        e
        for e in plan.practice_exercises
        if not e.question or not e.options or not e.correct_answer
    ]
    if incomplete:
        raise CompletenessError(f"{len(incomplete)} ejercicio(s) incompleto(s)")


def _fallback_keywords(topic_name: str, subject: str) -> list[str]:
    """Broad query used when a topic's own keywords find nothing."""
    return [topic_name, subject]


async def _require_title_and_url(
    payload: dict[str, Any], keywords: Sequence[str]
) -> bool:
    return bool(payload.get("title") and payload.get("url"))


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class StudyPlanService:
    def __init__(
        self,
        store: DocumentStore,
        scheduler: RateLimitedScheduler,
        settings: Settings | None = None,
        *,
        gate: ValidationGate | None = None,
        video_search: Callable[..., Awaitable[Any]] = search_videos,
        web_search: Callable[..., Awaitable[Any]] = search_pages,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.gate = gate or ValidationGate(self.settings)
        self._search_videos = video_search
        self._search_pages = web_search
        self._sleep = sleep
        # One cache per kind so concurrent plans share the per-key locks
        self.videos = ResourceCache(
            store,
            video_kind(self.settings),
            _empty_source,
            accept=_require_title_and_url,
        )
        self.links = ResourceCache(
            store,
            link_kind(self.settings),
            _empty_source,
            accept=self._accept_link,
            validation_budget_factor=LINK_VALIDATION_BUDGET_FACTOR,
        )
        self.exercises = ResourceCache(
            store, exercise_kind(self.settings), _empty_source
        )

    # -- results ---------------------------------------------------------

    async def get_student_results(
        self, student_id: str, phase: str, subject: str
    ) -> list[dict[str, Any]]:
        variants = PHASE_VARIANTS.get(phase)
        if not variants:
            raise ValueError(f"Fase inválida: {phase}")
        target = normalize_for_match(subject)
        results: list[dict[str, Any]] = []
        for variant in variants:
            documents = await self.store.list_collection(
                f"{RESULTS_ROOT}/{student_id}/{variant}"
            )
            for document in documents:
                if normalize_for_match(document.data.get("subject") or "") == target:
                    results.append({**document.data, "examId": document.doc_id})
        logger.info(
            "Found %d %s result(s) for student %s in %s",
            len(results),
            subject,
            student_id,
            phase,
        )
        return results

    # -- generation ------------------------------------------------------

    async def generate_study_plan(
        self,
        student_id: str,
        phase: str,
        subject: str,
        grade: str | None = None,
    ) -> StudyPlanGenerationResult:
        start = time.perf_counter()
        try:
            async with asyncio.timeout(self.settings.ORCHESTRATION_TIMEOUT_SECONDS):
                plan = await self._generate(student_id, phase, subject, grade)
        except TimeoutError:
            error: PipelineError = GenerationTimeoutError(
                f"Study plan generation exceeded "
                f"{self.settings.ORCHESTRATION_TIMEOUT_SECONDS:.0f}s"
            )
            logger.error("%s; nothing was saved", error.message)
            return self._failure(error.message, error.error_code, start)
        except UNRECOVERABLE_ERRORS:
            raise
        except PipelineError as exc:
            logger.error(
                "Study plan for %s failed (%s): %s",
                student_id,
                exc.error_code,
                exc.message,
            )
            return self._failure(exc.message, exc.error_code, start)
        except ValueError as exc:
            logger.error("Study plan for %s failed: %s", student_id, exc)
            return self._failure(str(exc), "invalid_input", start)

        logger.info(
            "✅ Study plan for %s/%s/%s saved: %d videos, %d links, %d exercises",
            student_id,
            phase,
            subject,
            len(plan.video_resources),
            len(plan.study_links),
            len(plan.practice_exercises),
        )
        return StudyPlanGenerationResult(
            success=True, study_plan=plan, processing_time_ms=_elapsed_ms(start)
        )

    def _failure(
        self, message: str, code: str, start: float
    ) -> StudyPlanGenerationResult:
        return StudyPlanGenerationResult(
            success=False,
            error=message,
            error_code=code,
            processing_time_ms=_elapsed_ms(start),
        )

    async def _generate(
        self, student_id: str, phase: str, subject: str, grade: str | None
    ) -> StudyPlan:
        results = await self.get_student_results(student_id, phase, subject)
        if not results:
            raise ValueError(
                f"No se encontraron resultados para el estudiante {student_id} "
                f"en la fase {phase} para la materia {subject}"
            )
        weaknesses = calculate_weaknesses(results)
        if not weaknesses:
            raise ValueError(
                "El estudiante no tiene debilidades identificadas en esta materia"
            )

        weak_topics = [w.topic for w in weaknesses]
        official = canonical_topics_with_weakness(subject, weak_topics) or (
            subject_topics(subject) or []
        )
        prompt = build_study_plan_prompt(
            student_id, phase_name(phase), subject, weaknesses, official, EXERCISE_COUNT
        )
        result = await self.scheduler.execute(
            GenerationRequest(
                prompt=prompt,
                timeout_override=PLAN_TIMEOUT_SECONDS,
                max_retries=self.settings.GENERATION_MAX_RETRIES,
            )
        )
        outcome = extract(result.text, PLAN_SCHEMA)
        if isinstance(outcome, ExtractionFailure):
            raise outcome.to_error()
        parsed = outcome.data

        topics = parse_topics(parsed.get("topics"))
        raw_exercises = parsed.get("practice_exercises")
        if not isinstance(raw_exercises, list):
            raw_exercises = []
        exercises = [
            exercise
            for index, raw in enumerate(raw_exercises)
            if (exercise := normalize_exercise(raw, index)) is not None
        ]
        if len(exercises) != EXERCISE_COUNT:
            logger.warning(
                "Expected %d practice exercises, got %d usable",
                EXERCISE_COUNT,
                len(exercises),
            )

        videos, links = await asyncio.gather(
            self._collect_videos(phase, subject, topics),
            self._collect_links(phase, subject, topics),
        )

        plan = StudyPlan(
            student_info=StudentInfo(
                student_id=student_id,
                phase=phase,
                subject=subject,
                weaknesses=weaknesses,
            ),
            diagnostic_summary=str(parsed["diagnostic_summary"]),
            study_plan_summary=str(parsed["study_plan_summary"]),
            topics=topics,
            practice_exercises=exercises,
            video_resources=videos,
            study_links=links,
            generated_at=datetime.now(UTC),
            generated_by=result.metadata.model,
        )
        check_completeness(plan)

        await self.cache_exercises(subject, grade, exercises)
        await self.save_study_plan(student_id, phase, subject, plan)
        return plan

    async def save_study_plan(
        self, student_id: str, phase: str, subject: str, plan: StudyPlan
    ) -> None:
        await self.store.set(
            f"{PLANS_ROOT}/{student_id}/{phase_name(phase)}/{subject}",
            plan.to_document(),
        )

    async def get_study_plan(
        self, student_id: str, phase: str, subject: str
    ) -> StudyPlan | None:
        for variant in PHASE_VARIANTS.get(phase, []):
            path = f"{PLANS_ROOT}/{student_id}/{variant}/{subject}"
            data = await self.store.get(path)
            if data is not None:
                return StudyPlan.model_validate(data)
        return None

    # -- videos ----------------------------------------------------------

    def _video_source(self, phase: str, subject: str, topic_name: str) -> SearchSource:
        fallback = _fallback_keywords(topic_name, subject)

        async def source(keywords: list[str], limit: int) -> list[dict[str, Any]]:
            # The fallback search goes out verbatim
            search_keywords = list(keywords)
            if search_keywords != fallback:
                search_keywords = await self.derive_video_keywords(
                    topic_name, subject, phase, keywords
                )
            outcome = await self._search_videos(search_keywords, limit)
            return [video.to_payload() for video in outcome.results]

        return source

    async def derive_video_keywords(
        self, topic: str, subject: str, phase: str, keywords: Sequence[str]
    ) -> list[str]:
        """Ask Gemini for pedagogical search keywords; fall back to ``keywords``."""
        prompt = build_video_keywords_prompt(
            topic, subject, phase_name(phase), keywords
        )
        try:
            result = await self.scheduler.execute(
                GenerationRequest(
                    prompt=prompt,
                    timeout_override=VIDEO_KEYWORDS_TIMEOUT_SECONDS,
                    max_retries=VIDEO_KEYWORDS_RETRIES,
                )
            )
        except UNRECOVERABLE_ERRORS:
            raise
        except PipelineError as exc:
            logger.warning(
                "Video keyword derivation failed for %s (%s), using topic keywords",
                topic,
                exc.error_code,
            )
            return list(keywords)

        outcome = extract(result.text, VIDEO_KEYWORDS_SCHEMA)
        if isinstance(outcome, ExtractionFailure):
            logger.warning(
                "Unparseable video keywords for %s, using topic keywords", topic
            )
            return list(keywords)
        try:
            info = VideoSearchSemanticInfo.model_validate(outcome.data)
        except pydantic.ValidationError:
            return list(keywords)
        derived = [k.strip() for k in info.search_keywords if k.strip()]
        if not derived:
            return list(keywords)
        logger.info("Derived video keywords for %s: %s", topic, ", ".join(derived))
        return derived

    async def get_videos_for_topic(
        self, phase: str, subject: str, topic: StudyPlanTopic
    ) -> list[VideoResource]:
        key = ResourceKey.for_topic(subject, phase_name(phase), topic.name)
        entries = await self.videos.get(
            key,
            keywords=topic.keywords,
            fallback_keywords=_fallback_keywords(topic.name, subject),
            source=self._video_source(phase, subject, topic.name),
        )
        return [self._video_resource(entry, topic.name) for entry in entries]

    @staticmethod
    def _video_resource(entry: CachedResource, topic_name: str) -> VideoResource:
        payload = entry.payload
        return VideoResource(
            title=payload.get("title", ""),
            url=payload.get("url", ""),
            description=payload.get("description") or "",
            channel_title=payload.get("channelTitle") or "",
            video_id=payload.get("videoId"),
            duration=payload.get("duration"),
            language=payload.get("language"),
            topic=topic_name,
        )

    async def _collect_videos(
        self, phase: str, subject: str, topics: Sequence[StudyPlanTopic]
    ) -> list[VideoResource]:
        searchable = [t for t in topics if t.keywords]
        for topic in topics:
            if not topic.keywords:
                logger.warning("Topic %r has no keywords, skipping videos", topic.name)
        per_topic = await asyncio.gather(
            *(self.get_videos_for_topic(phase, subject, t) for t in searchable)
        )
        # Topics keep their own videos even when they repeat across topics
        return [video for videos in per_topic for video in videos]

    # -- links -----------------------------------------------------------

    def _link_source(self, topic: StudyPlanTopic) -> SearchSource:
        info = topic.web_search_info
        intent = info.search_intent if info else ""
        content_types = info.expected_content_types if info else []

        async def source(keywords: list[str], limit: int) -> list[dict[str, Any]]:
            query = f"{intent} {' '.join(keywords)}".strip()
            pages = max(1, -(-limit // 10))
            outcome = await self._search_pages(
                query, min(pages, self.settings.WEB_SEARCH_MAX_PAGES)
            )
            trusted = [r for r in outcome.results if self.gate.is_trusted_domain(r.url)]
            ranked = self.gate.rank_by_relevance(trusted, keywords, content_types)
            logger.info(
                "Web search for %r: %d result(s), %d trusted, %d relevant",
                topic.name,
                len(outcome.results),
                len(trusted),
                len(ranked),
            )
            return [
                {
                    "title": r.title,
                    "url": r.url,
                    "description": r.snippet or intent,
                }
                for r in ranked[:limit]
            ]

        return source

    async def _accept_link(
        self, payload: dict[str, Any], keywords: Sequence[str]
    ) -> bool:
        accepted = await self.gate.validate_link(
            payload["url"],
            title=payload.get("title", ""),
            snippet=payload.get("description", ""),
            keywords=keywords,
        )
        await self._sleep(self.settings.LINK_PROBE_PAUSE_SECONDS)
        return accepted

    async def get_links_for_topic(
        self, phase: str, subject: str, topic: StudyPlanTopic
    ) -> list[StudyLink]:
        info = topic.web_search_info
        keywords = (info.search_keywords if info else []) or topic.keywords
        key = ResourceKey.for_topic(subject, phase_name(phase), topic.name)
        entries = await self.links.get(
            key,
            keywords=keywords,
            fallback_keywords=_fallback_keywords(topic.name, subject),
            source=self._link_source(topic),
        )
        return [
            StudyLink(
                title=entry.payload.get("title", ""),
                url=entry.payload.get("url", ""),
                description=entry.payload.get("description") or "",
                topic=topic.name,
            )
            for entry in entries
        ]

    async def _collect_links(
        self, phase: str, subject: str, topics: Sequence[StudyPlanTopic]
    ) -> list[StudyLink]:
        searchable = [t for t in topics if t.web_search_info is not None]
        for topic in topics:
            if topic.web_search_info is None:
                logger.warning(
                    "Topic %r has no webSearchInfo, skipping links", topic.name
                )
        per_topic = await asyncio.gather(
            *(self.get_links_for_topic(phase, subject, t) for t in searchable)
        )
        return [link for links in per_topic for link in links]

    # -- exercises -------------------------------------------------------

    def _exercise_topic(self, subject: str, exercise: PracticeExercise) -> str:
        return map_to_canonical_topic(subject, exercise.topic) or exercise.topic

    async def cache_exercises(
        self, subject: str, grade: str | None, exercises: Sequence[PracticeExercise]
    ) -> int:
        """Add generated exercises to the per-topic exercise bank; returns new count."""
        subject_name = canonical_subject_name(subject) or subject
        grouped: dict[str, list[dict[str, Any]]] = {}
        for exercise in exercises:
            grouped.setdefault(self._exercise_topic(subject, exercise), []).append(
                exercise.model_dump(by_alias=True)
            )

        added = 0
        capacity = self.exercises.kind.capacity
        for topic, payloads in grouped.items():
            key = ResourceKey.for_topic(subject_name, grade_name(grade), topic)
            before = len(await self.exercises.read(key))
            after = await self.exercises.get(
                key, capacity, keywords=[topic], source=_fixed_source(payloads)
            )
            added += len(after) - before
        logger.info("Cached %d new exercise(s) for %s", added, subject_name)
        return added

    async def get_random_exercises(
        self, grade: str | None, subject: str | None = None, limit: int = 10
    ) -> list[PracticeExercise]:
        """Random exercises from the bank of one subject, or of every subject."""
        if subject is not None:
            name = canonical_subject_name(subject)
            subjects = [name] if name else []
        else:
            subjects = list(SUBJECT_TOPICS)

        exercises: list[PracticeExercise] = []
        for subject_name in subjects:
            for topic in SUBJECT_TOPICS[subject_name]:
                key = ResourceKey.for_topic(subject_name, grade_name(grade), topic)
                for entry in await self.exercises.read(key):
                    data = entry.payload
                    if not data.get("question"):
                        continue
                    exercises.append(
                        PracticeExercise(
                            question=data["question"],
                            options=data.get("options") or [],
                            correct_answer=data.get("correctAnswer", ""),
                            explanation=data.get("explanation", ""),
                            topic=data.get("topic") or topic,
                        )
                    )
        random.shuffle(exercises)
        return exercises[:limit]


async def _empty_source(keywords: list[str], limit: int) -> list[dict[str, Any]]:
    return []


def _fixed_source(payloads: list[dict[str, Any]]) -> SearchSource:
    async def source(keywords: list[str], limit: int) -> list[dict[str, Any]]:
        return payloads

    return source

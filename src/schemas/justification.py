"""Schemas for bank questions and their AI-generated justifications.

Stored documents keep the camelCase keys the question bank already uses, so
every model here accepts both the Python field name and the camelCase alias
and dumps with ``by_alias=True`` when persisted.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DifficultyLevel(str, Enum):
    """Difficulty level of a bank question."""

    EASY = "Fácil"
    MEDIUM = "Medio"
    HARD = "Difícil"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QuestionOption(CamelModel):
    """One option of a multiple-choice question."""

    id: str = Field(..., min_length=1, description="Option letter, e.g. 'A'")
    text: str | None = Field(default=None, description="Option text")
    image_url: str | None = Field(default=None, description="Optional option image")
    is_correct: bool = Field(default=False, description="Whether this is the answer")


class QuestionGenerationData(CamelModel):
    """Everything the justification prompt needs from a stored question."""

    question_id: str
    question_code: str = ""
    subject: str
    topic: str = ""
    level: str = DifficultyLevel.MEDIUM.value
    question_text: str
    informative_text: str | None = None
    informative_images: list[str] = Field(default_factory=list)
    question_images: list[str] = Field(default_factory=list)
    options: list[QuestionOption] = Field(default_factory=list)

    @property
    def correct_option(self) -> QuestionOption | None:
        return next((o for o in self.options if o.is_correct), None)

    @property
    def incorrect_options(self) -> list[QuestionOption]:
        return [o for o in self.options if not o.is_correct]

    @classmethod
    def from_document(
        cls, question_id: str, data: dict[str, Any]
    ) -> "QuestionGenerationData":
        return cls.model_validate(
            {
                "questionId": question_id,
                "questionCode": data.get("code", ""),
                "subject": data.get("subject", ""),
                "topic": data.get("topic", ""),
                "level": data.get("level") or DifficultyLevel.MEDIUM.value,
                "questionText": data.get("questionText", ""),
                "informativeText": data.get("informativeText"),
                "informativeImages": data.get("informativeImages") or [],
                "questionImages": data.get("questionImages") or [],
                "options": data.get("options") or [],
            }
        )


class IncorrectAnswerExplanation(CamelModel):
    option_id: str
    explanation: str


class AIJustification(CamelModel):
    """AI-generated justification attached to a question."""

    correct_answer_explanation: str
    incorrect_answers_explanation: list[IncorrectAnswerExplanation]
    key_concepts: list[str] = Field(default_factory=list)
    perceived_difficulty: str = DifficultyLevel.MEDIUM.value
    generated_at: datetime
    generated_by: str = Field(..., description="Model name that produced it")
    confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    prompt_version: str
    synthesized: bool = Field(
        default=False,
        description="True when some option explanations are generic placeholders",
    )


class JustificationValidation(BaseModel):
    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class JustificationGenerationResult(BaseModel):
    success: bool
    question_id: str
    justification: AIJustification | None = None
    error: str | None = None
    error_code: str | None = None
    processing_time_ms: int | None = None


class QuestionFilters(BaseModel):
    """Equality filters applied to stored questions."""

    subject: str | None = None
    subject_code: str | None = None
    topic: str | None = None
    topic_code: str | None = None
    grade: str | None = None
    level: str | None = None
    level_code: str | None = None
    with_justification: bool | None = None
    without_justification: bool | None = None
    limit: int | None = Field(default=None, ge=1)

    model_config = ConfigDict(extra="forbid")

    def equality_filters(self) -> dict[str, str]:
        """Stored field name -> required value, for the filters that are set."""
        fields = {
            "subject": self.subject,
            "subjectCode": self.subject_code,
            "topic": self.topic,
            "topicCode": self.topic_code,
            "grade": self.grade,
            "level": self.level,
            "levelCode": self.level_code,
        }
        return {key: value for key, value in fields.items() if value is not None}


class BatchProcessingConfig(BaseModel):
    batch_size: int = Field(default=50, ge=1)
    delay_between_items_ms: int = Field(default=2000, ge=0)
    max_retries: int = Field(default=3, ge=1)
    dry_run: bool = False
    filters: QuestionFilters = Field(default_factory=QuestionFilters)


class BatchItemError(BaseModel):
    question_id: str
    question_code: str
    error: str
    error_code: str | None = None


class BatchProcessingResult(BaseModel):
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    # failures the next run would hit again (permissions, connection)
    unrecoverable: int = 0
    errors: list[BatchItemError] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int = 0

    def absorb(self, other: "BatchProcessingResult") -> None:
        self.total_processed += other.total_processed
        self.successful += other.successful
        self.failed += other.failed
        self.skipped += other.skipped
        self.unrecoverable += other.unrecoverable
        self.errors.extend(other.errors)

    @property
    def success_rate(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return self.successful / self.total_processed * 100


class CoverageCount(BaseModel):
    total: int = 0
    with_justification: int = 0


class JustificationStats(BaseModel):
    total: int = 0
    with_justification: int = 0
    without_justification: int = 0
    by_subject: dict[str, CoverageCount] = Field(default_factory=dict)
    by_level: dict[str, CoverageCount] = Field(default_factory=dict)
    by_grade: dict[str, CoverageCount] = Field(default_factory=dict)
    average_confidence: float | None = None


class ValidationReportItem(BaseModel):
    question_id: str
    question_code: str
    validation: JustificationValidation


class ValidationReport(BaseModel):
    total: int
    valid: int
    invalid: int
    results: list[ValidationReportItem] = Field(default_factory=list)


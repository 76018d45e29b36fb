"""Schemas for personalized study plans.

The top-level plan keeps the snake_case keys of the generated document
(``diagnostic_summary``, ``practice_exercises``); nested resource records use
camelCase on the wire (``webSearchInfo``, ``correctAnswer``, ``channelTitle``).
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Phase = Literal["first", "second", "third"]
OPTION_LETTERS = ("A", "B", "C", "D")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TopicWebSearchInfo(CamelModel):
    """What to look for on the web for one topic; never URLs."""

    search_intent: str = ""
    search_keywords: list[str] = Field(default_factory=list)
    expected_content_types: list[str] = Field(default_factory=list)
    educational_level: str = "preparación ICFES"


class VideoSearchSemanticInfo(CamelModel):
    """Pedagogical search criteria derived before querying the video API."""

    search_intent: str = ""
    search_keywords: list[str] = Field(default_factory=list)
    academic_level: str = "medio"
    expected_content_type: str = "conceptual"
    competence_to_strengthen: str = "interpretación"


class StudyPlanTopic(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    level: str = ""
    keywords: list[str] = Field(default_factory=list)
    web_search_info: TopicWebSearchInfo | None = None


class PracticeExercise(CamelModel):
    question: str
    options: list[str]
    correct_answer: str
    explanation: str = ""
    topic: str = ""


class VideoResource(CamelModel):
    title: str
    url: str
    description: str = ""
    channel_title: str = ""
    video_id: str | None = None
    duration: str | None = None
    language: str | None = None
    topic: str | None = None


class StudyLink(CamelModel):
    title: str
    url: str
    description: str = ""
    topic: str | None = None


class WeakQuestion(CamelModel):
    question_id: str | int = ""
    question_text: str = ""
    topic: str = ""
    is_correct: bool = False


class StudentWeakness(BaseModel):
    topic: str
    percentage: int
    correct: int
    total: int
    questions: list[WeakQuestion] = Field(default_factory=list)


class StudentInfo(CamelModel):
    student_id: str
    phase: str
    subject: str
    weaknesses: list[StudentWeakness] = Field(default_factory=list)


class StudyPlan(BaseModel):
    """A complete plan as persisted under ``AnswerIA/{student}/{phase}/{subject}``."""

    student_info: StudentInfo
    diagnostic_summary: str
    study_plan_summary: str
    topics: list[StudyPlanTopic] = Field(default_factory=list)
    practice_exercises: list[PracticeExercise] = Field(default_factory=list)
    video_resources: list[VideoResource] = Field(default_factory=list)
    study_links: list[StudyLink] = Field(default_factory=list)
    generated_at: datetime | None = Field(default=None, alias="generatedAt")
    generated_by: str | None = Field(default=None, alias="generatedBy")
    version: str = "1.0"

    model_config = ConfigDict(populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StudyPlanGenerationResult(BaseModel):
    success: bool
    study_plan: StudyPlan | None = None
    error: str | None = None
    error_code: str | None = None
    processing_time_ms: int | None = None

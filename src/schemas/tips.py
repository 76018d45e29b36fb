"""Schemas for exam preparation tips."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


TIP_CATEGORIES = (
    "Estrategia",
    "Tiempo",
    "Simulacro",
    "Errores Comunes",
    "Motivacion",
    "Tecnica de Estudio",
    "Dia del Examen",
    "MiniReto",
)


class Tip(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str | None = Field(default=None, exclude=True)
    title: str
    description: str
    subject: str = "General"
    topic: str = "General"
    level: str = "Medio"
    category: str
    example: str | None = None
    recommendation: str | None = None
    tags: list[str] = Field(default_factory=lambda: ["icfes"])
    created_by: str = "gemini"
    # epoch milliseconds
    created_at: int
    active: bool = True


class TipsGenerationResult(BaseModel):
    saved: int = 0
    skipped: int = 0

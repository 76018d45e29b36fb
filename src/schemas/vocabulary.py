"""Schemas for the academic vocabulary bank."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WordDefinition(BaseModel):
    """One stored word; the document id travels in ``id`` and is never dumped."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str | None = Field(default=None, exclude=True)
    palabra: str
    definicion: str
    materia: str
    activa: bool = True
    fecha_creacion: datetime
    version: int = 1
    ejemplo_icfes: str | None = None
    # only kept when ejemplo_icfes asks something
    respuesta_ejemplo_icfes: str | None = None


class WordResult(BaseModel):
    palabra: str
    success: bool
    error: str | None = None


class VocabularyBatchResult(BaseModel):
    success: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[WordResult] = Field(default_factory=list)

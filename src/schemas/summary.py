"""Schemas for per-phase academic summaries of a student."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PerformanceLevel(str, Enum):
    SUPERIOR = "Superior"
    HIGH = "Alto"
    BASIC = "Básico"
    LOW = "Bajo"

    @classmethod
    def for_percentage(cls, percentage: float) -> "PerformanceLevel":
        if percentage >= 80:
            return cls.SUPERIOR
        if percentage >= 60:
            return cls.HIGH
        if percentage >= 40:
            return cls.BASIC
        return cls.LOW


class TopicScore(BaseModel):
    tema: str
    puntaje: float
    nivel: PerformanceLevel
    total_preguntas: int = 0
    correctas: int = 0


class SubjectTopicScore(BaseModel):
    materia: str
    tema: str
    puntaje: float


class EvaluationResult(BaseModel):
    """Best evaluation of one subject in a phase."""

    materia: str
    puntaje: float
    nivel: PerformanceLevel
    temas: list[TopicScore] = Field(default_factory=list)


class GlobalMetrics(BaseModel):
    promedio_general: float = 0.0
    materias_fuertes: list[str] = Field(default_factory=list)
    materias_debiles: list[str] = Field(default_factory=list)
    temas_fuertes: list[SubjectTopicScore] = Field(default_factory=list)
    temas_debiles: list[SubjectTopicScore] = Field(default_factory=list)
    nivel_general_desempeno: PerformanceLevel = PerformanceLevel.LOW
    # 35-39 %: close to the basic band
    debilidades_leves: list[SubjectTopicScore] = Field(default_factory=list)
    # below 35 %
    debilidades_estructurales: list[SubjectTopicScore] = Field(default_factory=list)


class AcademicSummary(BaseModel):
    """Fields produced by the model; the two narrative fields are required."""

    resumen_general: str
    analisis_competencial: str | dict[str, str]
    fortalezas_academicas: list[str] = Field(default_factory=list)
    aspectos_por_mejorar: list[str] = Field(default_factory=list)
    recomendaciones_enfoque_saber11: list[str] = Field(default_factory=list)
    justificacion_pedagogica: dict[str, Any] | None = None


class SummaryMetadata(BaseModel):
    materias_analizadas: int
    modelo_ia: str
    synthesized: bool = False


class StudentSummary(BaseModel):
    """Summary persisted under ``ResumenStudent/{student}/{phase}/resumenActual``."""

    student_id: str
    phase: str
    fecha: str
    version: str = "v1"
    fuente: str = "IA"
    resumen: AcademicSummary
    metadata: SummaryMetadata
    metricas_globales: GlobalMetrics | None = None


class SummaryGenerationResult(BaseModel):
    success: bool
    summary: StudentSummary | None = None
    error: str | None = None
    error_code: str | None = None
    processing_time_ms: int | None = None

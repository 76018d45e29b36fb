"""Prompt builders for the generation flows."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from schemas.justification import QuestionGenerationData
from schemas.study_plan import StudentWeakness
from schemas.tips import TIP_CATEGORIES


JUSTIFICATION_PROMPT = """
Eres un docente experto en {subject} que prepara estudiantes para la prueba
Saber 11 (ICFES). Explica por qué la respuesta correcta es correcta y por qué
cada opción incorrecta no lo es.

Tema: {topic}
Nivel: {level}
{context}
Pregunta:
{question}

Opciones:
{options}

Respuesta correcta: {correct_id}
{images}
Devuelve exclusivamente un objeto JSON válido con esta estructura:
{{
  "correctAnswerExplanation": "explicación detallada de la respuesta correcta",
  "incorrectAnswersExplanation": [
    {{"optionId": "X", "explanation": "por qué esta opción es incorrecta"}}
  ],
  "keyConcepts": ["concepto 1", "concepto 2", "concepto 3"],
  "perceivedDifficulty": "Fácil|Medio|Difícil",
  "confidence": 0.0
}}
Incluye una entrada en incorrectAnswersExplanation para cada una de estas
opciones: {incorrect_ids}. Responde solo con JSON, sin texto adicional.
"""

STUDY_PLAN_PROMPT = """
Actúas como docente experto en {subject} y en la prueba Saber 11 (ICFES).
Diseña un plan de estudio para el estudiante {student_id} en la {phase}.

Debilidades detectadas (porcentaje de acierto por tema):
{weaknesses}

Temas oficiales de la materia: {official_topics}

Reglas:
- No generes enlaces, URLs ni identificadores de video.
- Cada tema debe incluir entre 3 y 6 keywords para buscar videos y un objeto
  webSearchInfo con la intención de búsqueda y palabras clave.
- Genera {exercise_count} ejercicios de práctica tipo ICFES. Cada ejercicio
  tiene exactamente 4 opciones con el formato "A) ...", "B) ...", "C) ...",
  "D) ..." y correctAnswer es solo la letra.

Devuelve exclusivamente un objeto JSON válido con esta estructura:
{{
  "diagnostic_summary": "resumen de 50 palabras sobre lo que trabajará",
  "study_plan_summary": "resumen del plan",
  "topics": [
    {{
      "name": "nombre del tema",
      "description": "descripción",
      "level": "básico|medio|avanzado",
      "keywords": ["palabra1", "palabra2", "palabra3"],
      "webSearchInfo": {{
        "searchIntent": "qué debe encontrar el estudiante",
        "searchKeywords": ["palabra1", "palabra2"],
        "expectedContentTypes": ["artículo explicativo", "guía paso a paso"],
        "educationalLevel": "preparación ICFES"
      }}
    }}
  ],
  "practice_exercises": [
    {{
      "question": "enunciado",
      "options": ["A) ...", "B) ...", "C) ...", "D) ..."],
      "correctAnswer": "A",
      "explanation": "por qué es correcta",
      "topic": "nombre del tema"
    }}
  ]
}}
"""

VIDEO_KEYWORDS_PROMPT = """
Actúas como experto en docencia de {subject} y en la prueba Saber 11 (ICFES).
Tu tarea NO es generar enlaces ni recomendar videos específicos: define
criterios pedagógicos para buscar videos educativos que refuercen una
debilidad. No inventes URLs, IDs ni canales.

Tema con debilidad: {topic}
Materia: {subject}
Fase: {phase}
Keywords básicas del tema: {keywords}

Devuelve exclusivamente un objeto JSON válido con esta estructura:
{{
  "searchIntent": "qué debe aprender el estudiante",
  "searchKeywords": ["palabra1", "palabra2", "palabra3", "palabra4", "palabra5"],
  "academicLevel": "básico|medio|avanzado",
  "expectedContentType": "conceptual|paso a paso|con ejemplos|ejercicios resueltos",
  "competenceToStrengthen": "interpretación|formulación|argumentación"
}}
"""

SUMMARY_PROMPT = """
Eres un orientador académico experto en la prueba Saber 11 (ICFES). Redacta
el resumen académico del estudiante para la {phase} a partir de sus
resultados en las 7 áreas evaluadas. No menciones números de prueba.

Resultados por materia:
{results}

Métricas globales:
{metrics}

Devuelve exclusivamente un objeto JSON válido con esta estructura:
{{
  "resumen_general": "visión general del desempeño (150-200 palabras)",
  "analisis_competencial": {{"Materia": "análisis específico de la materia"}},
  "fortalezas_academicas": ["fortaleza 1", "fortaleza 2"],
  "aspectos_por_mejorar": ["aspecto 1", "aspecto 2"],
  "recomendaciones_enfoque_saber11": ["recomendación 1", "recomendación 2"]
}}
"""

DEFINITION_PROMPT = """
Actúa como un lingüista experto en pedagogía que define vocabulario académico
de las pruebas ICFES Saber 11. La definición debe ser clara, concisa y precisa,
adecuada para estudiantes de grado 11, sin tecnicismos innecesarios y de
máximo 4 a 5 líneas. No incluyas ejemplos extensos ni referencias externas.

Define la siguiente palabra en el contexto de {subject}:

"{word}"

Responde únicamente con la definición, sin explicaciones ni formato especial.
"""

WORD_EXAMPLE_PROMPT = """
Actúas como experto en diseño de pruebas ICFES Saber 11. Escribe un ejemplo
breve (máximo 4 a 5 líneas) de cómo aparece la palabra "{word}" en una pregunta
típica de {subject}.

Requisitos:
- La palabra "{word}" aparece escrita dentro del ejemplo.
- Una situación concreta y reconocible, con lenguaje sencillo.
- El ejemplo muestra cómo interpretar la palabra ayuda a resolver la pregunta.
- No es una definición disfrazada ni admite dos interpretaciones.

Si el ejemplo es una pregunta, incluye una respuesta lógica (máximo 4 a 5
líneas) que explique cómo entender "{word}" lleva a la solución. Si no es una
pregunta, omite el campo "respuesta".

Devuelve exclusivamente un objeto JSON válido:
{{
  "ejemplo": "ejemplo de uso",
  "respuesta": "respuesta razonada (solo si el ejemplo es una pregunta)"
}}
"""

TIPS_PROMPT = """
Eres un mentor experto en la prueba ICFES Saber 11 de Colombia. Genera {count}
consejos efectivos para estudiantes de grado 11 que se preparan para el examen.

El examen tiene cinco módulos: Lectura Crítica, Matemáticas, Ciencias
Sociales, Ciencias Naturales e Inglés. Los estudiantes suelen fallar por mala
gestión del tiempo, lectura apresurada, distractores que parecen correctos y
no analizar sus errores después de un simulacro.

Cada consejo debe ser:
- Preciso: enfocado en una situación real del Saber 11.
- Contextual: explica por qué funciona.
- Accionable: "recommendation" es una acción inmediata y medible.
- Con ejemplo práctico en "example" cuando sea útil.

Reparte los consejos entre las cinco áreas: unos {per_area} por área{remainder}.
Categorías a repartir: {categories}

Usa en "subject" exactamente uno de: "Lectura Crítica", "Matemáticas",
"Ciencias Sociales", "Ciencias Naturales", "Inglés".

Devuelve exclusivamente un objeto JSON válido:
{{
  "tips": [
    {{
      "title": "título corto (máx. 60 caracteres)",
      "description": "el consejo y por qué funciona en el ICFES",
      "subject": "materia",
      "topic": "tema concreto",
      "level": "Básico|Medio|Avanzado",
      "category": "una de: {all_categories}",
      "example": "ejemplo práctico",
      "recommendation": "acción inmediata y medible",
      "tags": ["icfes", "saber11"]
    }}
  ]
}}
Genera exactamente {count} elementos en "tips".
"""


def _format_options(data: QuestionGenerationData) -> str:
    lines = []
    for option in data.options:
        text = option.text or ("[imagen]" if option.image_url else "")
        lines.append(f"{option.id}) {text}")
    return "\n".join(lines)


def build_justification_prompt(
    data: QuestionGenerationData, image_labels: Sequence[str] = ()
) -> str:
    correct = data.correct_option
    context = ""
    if data.informative_text:
        context = f"Contexto informativo:\n{data.informative_text}\n"
    images = ""
    if image_labels:
        listed = "\n".join(f"{i}. {label}" for i, label in enumerate(image_labels, 1))
        images = (
            f"\nLa pregunta incluye {len(image_labels)} imagen(es) adjunta(s), "
            f"en este orden:\n{listed}\nUsa la información visual en tus "
            "explicaciones.\n"
        )
    return JUSTIFICATION_PROMPT.format(
        subject=data.subject,
        topic=data.topic or "general",
        level=data.level,
        context=context,
        question=data.question_text,
        options=_format_options(data),
        correct_id=correct.id if correct else "",
        images=images,
        incorrect_ids=", ".join(o.id for o in data.incorrect_options),
    )


def build_study_plan_prompt(
    student_id: str,
    phase: str,
    subject: str,
    weaknesses: Sequence[StudentWeakness],
    official_topics: Sequence[str],
    exercise_count: int = 20,
) -> str:
    lines = [
        f"- {w.topic}: {w.percentage}% ({w.correct}/{w.total})" for w in weaknesses
    ]
    return STUDY_PLAN_PROMPT.format(
        subject=subject,
        student_id=student_id,
        phase=phase,
        weaknesses="\n".join(lines),
        official_topics=", ".join(official_topics) or subject,
        exercise_count=exercise_count,
    )


def build_video_keywords_prompt(
    topic: str, subject: str, phase: str, keywords: Sequence[str]
) -> str:
    return VIDEO_KEYWORDS_PROMPT.format(
        topic=topic, subject=subject, phase=phase, keywords=", ".join(keywords)
    )


def build_summary_prompt(
    phase: str, results: Sequence[dict[str, Any]], metrics: dict[str, Any]
) -> str:
    return SUMMARY_PROMPT.format(
        phase=phase,
        results=json.dumps(list(results), ensure_ascii=False, indent=2),
        metrics=json.dumps(metrics, ensure_ascii=False, indent=2),
    )


def build_definition_prompt(word: str, subject: str) -> str:
    return DEFINITION_PROMPT.format(word=word.strip(), subject=subject)


def build_word_example_prompt(word: str, subject: str) -> str:
    return WORD_EXAMPLE_PROMPT.format(word=word.strip(), subject=subject)


def build_tips_prompt(count: int, categories: Sequence[str] = ()) -> str:
    """Tips prompt spreading ``count`` tips across the five exam areas."""
    per_area, remainder = divmod(count, 5)
    extra = f" y reparte los {remainder} restantes" if remainder else ""
    return TIPS_PROMPT.format(
        count=count,
        per_area=per_area,
        remainder=extra,
        categories=", ".join(categories or TIP_CATEGORIES),
        all_categories=", ".join(TIP_CATEGORIES),
    )

"""Mock providers for development and tests.

Output is schema-valid and varied enough to exercise persistence; latency is
configurable and defaults to none.
"""

import asyncio
import random

from voicenote_pipeline.providers.base import (
    MB,
    LLMProvider,
    STTProvider,
    SummarizationOptions,
    SummarizationResult,
    TranscriptionOptions,
    TranscriptionResult,
    TranscriptionSegment,
    stagger_due_dates,
)

MOCK_TRANSCRIPTIONS = [
    "Hola, esta es una transcripción de prueba generada por el proveedor mock. "
    "En esta reunión discutimos los objetivos del proyecto y las próximas tareas a realizar.",
    "Buenos días equipo. Hoy vamos a revisar el progreso del MVP y definir las próximas tareas. "
    "Primero, necesitamos completar la documentación técnica para el viernes.",
    "Esta es una nota de voz sobre las ideas para nuevas funcionalidades. "
    "Deberíamos considerar agregar notificaciones push y sincronización en tiempo real.",
    "Llamada con el cliente para discutir feedback sobre la última versión. "
    "El cliente está satisfecho con el progreso y sugiere algunas mejoras menores.",
]

MOCK_SUMMARIES = [
    (
        "Reunión de seguimiento del proyecto con identificación de tareas clave y próximos pasos.",
        [
            "Revisión del progreso actual del MVP",
            "Asignación de nuevas responsabilidades",
            "Definición de fechas límite",
        ],
    ),
    (
        "Discusión sobre nuevas funcionalidades y mejoras propuestas para la aplicación.",
        [
            "Análisis de funcionalidades requeridas",
            "Evaluación de viabilidad técnica",
            "Priorización de desarrollo",
        ],
    ),
    (
        "Llamada con cliente para revisar feedback y establecer próximas iteraciones.",
        [
            "Feedback positivo del cliente",
            "Identificación de mejoras menores",
            "Planificación de próxima entrega",
        ],
    ),
    (
        "Brainstorming de ideas innovadoras para mejorar la experiencia del usuario.",
        [
            "Exploración de nuevas tecnologías",
            "Análisis de competencia",
            "Definición de roadmap",
        ],
    ),
]

MOCK_ACTIONS = [
    [
        {"text": "Completar documentación técnica", "priority": "high", "category": "documentation"},
        {"text": "Revisar casos de prueba QA", "priority": "medium", "category": "testing"},
        {"text": "Coordinar con equipo de diseño", "priority": "medium", "category": "design"},
    ],
    [
        {"text": "Implementar notificaciones push", "priority": "high", "category": "development"},
        {
            "text": "Configurar sincronización en tiempo real",
            "priority": "medium",
            "category": "backend",
        },
        {"text": "Actualizar documentación de API", "priority": "low", "category": "documentation"},
    ],
]


class MockSTTProvider(STTProvider):
    name = "mock"

    def __init__(self, latency: float = 0.0, default_language: str = "es", seed: int | None = None):
        self.latency = latency
        self.default_language = default_language
        self._random = random.Random(seed)

    async def transcribe(
        self, audio: bytes, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult:
        options = options or TranscriptionOptions()
        if self.latency:
            await asyncio.sleep(self.latency)

        text = self._random.choice(MOCK_TRANSCRIPTIONS)
        sentences = [s.strip() for s in text.split(".") if s.strip()]
        segments = [
            TranscriptionSegment(start=0.0, end=5.2, text=f"{sentences[0]}.", confidence=0.9),
            TranscriptionSegment(start=5.3, end=12.8, text=f"{sentences[1]}.", confidence=0.88),
        ]
        return TranscriptionResult(
            text=text,
            language=options.language or self.default_language,
            confidence=round(0.85 + self._random.random() * 0.1, 3),
            segments=segments,
            metadata={"provider": self.name, "file_size": len(audio)},
        )

    def supported_formats(self) -> list[str]:
        return ["audio/mpeg", "audio/wav", "audio/mp4", "audio/aac", "audio/ogg", "audio/webm"]

    def max_file_size(self) -> int:
        return 25 * MB


class MockLLMProvider(LLMProvider):
    name = "mock"

    def __init__(self, latency: float = 0.0, seed: int | None = None):
        self.latency = latency
        self._random = random.Random(seed)

    async def summarize(
        self, text: str, options: SummarizationOptions | None = None
    ) -> SummarizationResult:
        options = options or SummarizationOptions()
        if self.latency:
            await asyncio.sleep(self.latency)

        tl_dr, bullets = self._random.choice(MOCK_SUMMARIES)
        actions = stagger_due_dates(self._random.choice(MOCK_ACTIONS))
        return SummarizationResult(
            tl_dr=tl_dr,
            bullets=list(bullets),
            actions=actions,
            metadata={
                "provider": self.name,
                "model": options.model or "mock-v1",
                "input_tokens": len(text) // 4,
                "output_tokens": 150,
            },
        )

    def supported_models(self) -> list[str]:
        return ["mock-v1", "mock-fast", "mock-detailed"]

    def max_tokens(self) -> int:
        return 4096

"""
Local OCR — распознавание текста на изображениях прямо на устройстве.

Ядро — оркестратор задачи распознавания:
    - Предобработка изображения (resize + JPEG)
    - Жизненный цикл движка Tesseract (один экземпляр, переиспользование по языку)
    - Машина состояний задачи с прогрессом и отменой

Слой представления — локальное FastAPI приложение (local_ocr.main).
"""

from local_ocr.config import settings
from local_ocr.schemas import (
    ClassifiedError,
    ConditionedPayload,
    EngineStage,
    ErrorKind,
    ImageInput,
    JobSnapshot,
    Phase,
)
from local_ocr.services.orchestrator import JobOrchestrator

__all__ = [
    "settings",
    "JobOrchestrator",
    "ImageInput",
    "ConditionedPayload",
    "JobSnapshot",
    "Phase",
    "EngineStage",
    "ErrorKind",
    "ClassifiedError",
]

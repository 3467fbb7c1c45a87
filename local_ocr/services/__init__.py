"""
Сервисы локального OCR.

Модули:
    - preprocessor: подготовка изображения (resize + JPEG, без сожалений)
    - tessdata: загрузка моделей языков Tesseract
    - tesseract_engine: экземпляр движка Tesseract в отдельном процессе
    - engine_manager: жизненный цикл единственного движка
    - errors: ошибки и их классификация
    - state_machine: чистые переходы состояний задачи
    - orchestrator: оркестратор задачи распознавания
"""

from local_ocr.services.engine_manager import EngineManager
from local_ocr.services.errors import (
    EngineBootstrapError,
    EngineExecutionError,
    OCRError,
    UnsupportedInput,
    classify_failure,
)
from local_ocr.services.orchestrator import JobOrchestrator
from local_ocr.services.preprocessor import prepare
from local_ocr.services.tesseract_engine import create_tesseract_engine

__all__ = [
    "prepare",
    "create_tesseract_engine",
    "EngineManager",
    "JobOrchestrator",
    "classify_failure",
    "OCRError",
    "UnsupportedInput",
    "EngineBootstrapError",
    "EngineExecutionError",
]

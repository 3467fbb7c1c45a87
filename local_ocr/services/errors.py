"""
Ошибки локального OCR и их классификация.

Сырые исключения движка (сеть, Tesseract, память) превращаются
в ClassifiedError с подсказкой для пользователя. Подсказка зависит
от причины: при проблемах с сетью нужно проверить подключение,
при нехватке памяти — уменьшить изображение.
"""

import socket
from concurrent.futures.process import BrokenProcessPool
from typing import Optional

import httpx
import pytesseract
from PIL import Image

from local_ocr.schemas import ClassifiedError, ErrorKind


class OCRError(Exception):
    """Базовая ошибка локального OCR."""


class UnsupportedInput(OCRError):
    """Файл не является поддерживаемым изображением."""

    def __init__(self, media_type: str):
        self.media_type = media_type
        super().__init__(
            f"Поддерживаются только изображения (PNG/JPEG/WEBP), получен: {media_type or 'unknown'}"
        )


class EngineBootstrapError(OCRError):
    """Не удалось создать движок (Tesseract, модель языка)."""


class EngineExecutionError(OCRError):
    """Движок создан, но распознавание упало."""


# Этапы, на которых может упасть движок
STAGE_BOOTSTRAP = "bootstrap"
STAGE_EXECUTION = "execution"

# Подсказки для пользователя
HINT_NETWORK = "Проверьте подключение к сети и повторите попытку."
HINT_BACKEND = "Проверьте установку Tesseract и доступность моделей языков."
HINT_MEMORY = "Изображение слишком большое: уменьшите его и повторите попытку."

_NETWORK_MARKERS = ("network", "fetch", "download", "connect", "dns")
_BACKEND_MARKERS = ("tesseract", "backend", "traineddata", "tessdata")
_MEMORY_MARKERS = ("memory", "alloc")


def _iter_chain(exc: BaseException):
    """Обходит исключение и его причины (__cause__/__context__)."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _has_marker(exc: BaseException, markers: tuple[str, ...]) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in markers)


def _signal_of(exc: BaseException, stage: str) -> Optional[str]:
    """
    Определяет сигнал сбоя: "network", "backend", "memory" или None.

    Сначала проверяются типы исключений по всей цепочке,
    затем — сообщения.
    """
    chain = list(_iter_chain(exc))

    for item in chain:
        if isinstance(item, (MemoryError, Image.DecompressionBombError)):
            return "memory"
        if isinstance(item, httpx.HTTPStatusError):
            # Сервер ответил, но модели нет (например, неизвестный язык)
            return "backend"
        if isinstance(item, (httpx.HTTPError, ConnectionError, socket.gaierror)):
            return "network"
        if isinstance(item, pytesseract.TesseractNotFoundError):
            return "backend"
        if isinstance(item, BrokenProcessPool):
            # Воркер убит во время распознавания: почти всегда OOM
            return "memory" if stage == STAGE_EXECUTION else "backend"
        if isinstance(item, TimeoutError) and stage == STAGE_BOOTSTRAP:
            return "network"

    for item in chain:
        if _has_marker(item, _MEMORY_MARKERS):
            return "memory"
        if _has_marker(item, _NETWORK_MARKERS):
            return "network"
        if _has_marker(item, _BACKEND_MARKERS):
            return "backend"

    return None


def classify_failure(exc: BaseException, stage: str = STAGE_EXECUTION) -> ClassifiedError:
    """
    Классифицирует сырой сбой движка.

    Args:
        exc: исключение от движка или менеджера движка
        stage: STAGE_BOOTSTRAP (создание движка) или STAGE_EXECUTION (распознавание)

    Returns:
        ClassifiedError: вид ошибки + сообщение + подсказка.
            Для нераспознанных сбоев сообщение исключения передаётся как есть.
    """
    if isinstance(exc, UnsupportedInput):
        return ClassifiedError(kind=ErrorKind.UNSUPPORTED_INPUT, message=str(exc))

    signal = _signal_of(exc, stage)

    if signal == "network":
        return ClassifiedError(
            kind=ErrorKind.ENGINE_BOOTSTRAP_FAILURE,
            message="Не удалось загрузить модель распознавания.",
            hint=HINT_NETWORK,
        )
    if signal == "backend":
        return ClassifiedError(
            kind=ErrorKind.ENGINE_BOOTSTRAP_FAILURE,
            message="Не удалось инициализировать движок распознавания.",
            hint=HINT_BACKEND,
        )
    if signal == "memory":
        return ClassifiedError(
            kind=ErrorKind.ENGINE_EXECUTION_FAILURE,
            message="Не хватило памяти для распознавания.",
            hint=HINT_MEMORY,
        )

    # Неизвестная причина: вид по этапу, сообщение как есть
    kind = (
        ErrorKind.ENGINE_BOOTSTRAP_FAILURE
        if stage == STAGE_BOOTSTRAP
        else ErrorKind.ENGINE_EXECUTION_FAILURE
    )
    return ClassifiedError(kind=kind, message=str(exc) or type(exc).__name__)


def cancelled_error() -> ClassifiedError:
    """Терминальная «ошибка» отмены пользователем."""
    return ClassifiedError(kind=ErrorKind.CANCELLED, message="Распознавание отменено.")

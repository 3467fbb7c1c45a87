"""
Движок распознавания на Tesseract.

Экземпляр движка — отдельный процесс (ProcessPoolExecutor на 1 воркер),
привязанный к одному языку. Создание дорогое:
    1. loading tesseract core — проверка бинарника Tesseract
    2. initializing tesseract — запуск процесса-воркера
    3. loading language traineddata — модели языков (кэш / система / скачивание)
    4. initialized tesseract — движок готов

Распознавание — один вызов image_to_data: из него собирается и текст,
и средняя уверенность.
"""

import asyncio
import io
import logging
import os
import signal
import time
from concurrent.futures import Executor, ProcessPoolExecutor
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

import httpx
import pytesseract
from PIL import Image
from starlette.concurrency import run_in_threadpool

from local_ocr.config import Settings, settings as default_settings
from local_ocr.schemas import ConditionedPayload, EngineEvent, EngineStage, RecognitionResult
from local_ocr.services.errors import EngineBootstrapError, EngineExecutionError
from local_ocr.services.tessdata import ensure_models

logger = logging.getLogger(__name__)

EventCallback = Callable[[EngineEvent], None]


class RecognitionEngine(Protocol):
    """Контракт экземпляра движка для менеджера и оркестратора."""

    language: str

    async def recognize(
        self, payload: ConditionedPayload, on_event: EventCallback
    ) -> RecognitionResult:
        ...

    async def terminate(self) -> None:
        ...


EngineFactory = Callable[[str, EventCallback], Awaitable[RecognitionEngine]]


# =============================================================================
# Функции процесса-воркера (должны быть на уровне модуля для pickle)
# =============================================================================


def _init_worker() -> None:
    """
    Выделяет воркер в собственную группу процессов.

    Дочерний tesseract, запущенный pytesseract, наследует группу,
    поэтому остановка движка убивает их вместе.
    """
    if hasattr(os, "setpgrp"):
        os.setpgrp()


def _warmup() -> int:
    """Пустой вызов: заставляет пул поднять процесс заранее."""
    return os.getpid()


def _recognize_in_worker(data: bytes, lang: str, config: str) -> tuple[str, float]:
    """
    Распознаёт текст в процессе-воркере.

    Args:
        data: байты изображения
        lang: языки Tesseract ("rus+eng")
        config: строка конфига Tesseract (--oem/--psm/--tessdata-dir)

    Returns:
        tuple: (текст, средняя уверенность)
    """
    with Image.open(io.BytesIO(data)) as image:
        image.load()
        result = pytesseract.image_to_data(
            image,
            lang=lang,
            config=config,
            output_type=pytesseract.Output.DICT,
        )

    text = assemble_text_from_data(result)
    return text, average_confidence(result)


def assemble_text_from_data(data: dict) -> str:
    """
    Собирает текст из словаря image_to_data с правильной структурой.

    Алгоритм:
        - Слова на одной строке (line_num) соединяются пробелами
        - Разные строки в одном блоке — новая строка (\\n)
        - Разные блоки — пустая строка между ними (\\n\\n)

    Args:
        data: словарь от pytesseract.image_to_data()

    Returns:
        str: собранный текст
    """
    # Структура: {block_num: {par_num: {line_num: [words]}}}
    blocks: dict = {}

    for i, raw in enumerate(data["text"]):
        word = str(raw).strip()
        if not word:
            continue

        lines = blocks.setdefault(data["block_num"][i], {}).setdefault(data["par_num"][i], {})
        lines.setdefault(data["line_num"][i], []).append(word)

    result_blocks = []
    for block_num in sorted(blocks):
        block_lines = []
        for par_num in sorted(blocks[block_num]):
            for line_num in sorted(blocks[block_num][par_num]):
                block_lines.append(" ".join(blocks[block_num][par_num][line_num]))
        result_blocks.append("\n".join(block_lines))

    return "\n\n".join(result_blocks)


def average_confidence(data: dict) -> float:
    """Средняя уверенность по реальным словам (conf >= 0)."""
    confidences = []
    for c in data["conf"]:
        try:
            value = float(c)
        except (TypeError, ValueError):
            continue
        if value >= 0:
            confidences.append(value)
    return sum(confidences) / len(confidences) if confidences else 0.0


# =============================================================================
# Экземпляр движка
# =============================================================================


class TesseractEngine:
    """
    Экземпляр движка Tesseract, привязанный к языку.

    Владеет процессом-воркером. Одновременно выполняется не больше
    одного распознавания.
    """

    def __init__(
        self,
        language: str,
        executor: ProcessPoolExecutor,
        tessdata_dir: Optional[Path],
        settings: Settings,
    ):
        self.language = language
        self._executor: Optional[ProcessPoolExecutor] = executor
        self._tessdata_dir = tessdata_dir
        self._settings = settings
        self._lock = asyncio.Lock()

    @property
    def is_terminated(self) -> bool:
        return self._executor is None

    def _tesseract_config(self) -> str:
        config = f"--oem {self._settings.ocr_oem} --psm {self._settings.ocr_psm}"
        if self._tessdata_dir is not None:
            config += f' --tessdata-dir "{self._tessdata_dir}"'
        return config

    async def recognize(
        self, payload: ConditionedPayload, on_event: EventCallback
    ) -> RecognitionResult:
        """
        Распознаёт текст на подготовленном изображении.

        Args:
            payload: подготовленное изображение
            on_event: колбэк событий прогресса

        Returns:
            RecognitionResult: текст и уверенность

        Raises:
            RuntimeError: если движок уже уничтожен
            EngineExecutionError: если Tesseract завершился с ошибкой
        """
        async with self._lock:
            if self._executor is None:
                raise RuntimeError("Движок распознавания уже остановлен")

            on_event(EngineEvent(EngineStage.RECOGNIZING.value, 0.0))
            start = time.perf_counter()

            loop = asyncio.get_running_loop()
            try:
                text, confidence = await loop.run_in_executor(
                    self._executor,
                    _recognize_in_worker,
                    payload.data,
                    self.language,
                    self._tesseract_config(),
                )
            except pytesseract.TesseractError as e:
                raise EngineExecutionError(str(e)) from e

            on_event(EngineEvent(EngineStage.RECOGNIZING.value, 1.0))
            duration = int((time.perf_counter() - start) * 1000)
            logger.info(
                f"OCR: {len(text)} симв., уверенность {confidence:.0f}% за {duration}ms"
            )

            return RecognitionResult(text=text, confidence=confidence)

    async def terminate(self) -> None:
        """
        Убивает процесс-воркер и запущенный им tesseract. Идемпотентно.

        Текущее распознавание прерывается, его результат
        отбрасывается вызывающей стороной.
        """
        executor, self._executor = self._executor, None
        if executor is None:
            return
        await run_in_threadpool(_stop_executor, executor)
        logger.info(f"Движок {self.language} остановлен")


def _kill_worker(process) -> None:
    # Группа воркера есть только если отработал _init_worker
    if hasattr(os, "killpg"):
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            pass
    process.kill()


def _stop_executor(executor: Executor, join_timeout: float = 5.0) -> None:
    """
    Останавливает пул и убивает его процессы вместе с дочерними.

    shutdown() только запрещает новые задачи: воркер внутри image_to_data
    продолжил бы работать до конца вызова. Поэтому процессы убиваются
    явно и дожидаются (join).

    Args:
        executor: пул воркеров движка
        join_timeout: сколько ждать завершения каждого процесса
    """
    # После shutdown() пул обнуляет _processes, забираем заранее
    processes = list((getattr(executor, "_processes", None) or {}).values())
    executor.shutdown(wait=False, cancel_futures=True)

    for process in processes:
        if process.is_alive():
            _kill_worker(process)
    for process in processes:
        process.join(join_timeout)
        if process.is_alive():
            logger.error(f"Воркер pid={process.pid} не завершился за {join_timeout}s")


def _system_languages() -> set[str]:
    try:
        return set(pytesseract.get_languages(config=""))
    except (pytesseract.TesseractError, OSError) as e:
        logger.warning(f"Не удалось получить список языков Tesseract: {e}")
        return set()


async def create_tesseract_engine(
    language: str,
    on_event: EventCallback,
    settings: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> TesseractEngine:
    """
    Создаёт экземпляр движка для языка.

    Каждый под-этап сообщает прогресс 0.0 -> 1.0 через on_event.
    При любой ошибке запущенный воркер останавливается,
    исключение пробрасывается как есть.

    Args:
        language: строка языков Tesseract ("eng", "rus+eng")
        on_event: колбэк событий прогресса
        settings: настройки (по умолчанию глобальные)
        client: httpx клиент для скачивания моделей (для тестов)

    Returns:
        TesseractEngine: готовый движок

    Raises:
        EngineBootstrapError: Tesseract не установлен
        httpx.HTTPError: не удалось скачать модель
    """
    cfg = settings or default_settings
    start = time.perf_counter()

    # 1. Проверяем бинарник Tesseract
    on_event(EngineEvent(EngineStage.LOADING_CORE.value, 0.0))
    try:
        version = await run_in_threadpool(pytesseract.get_tesseract_version)
    except pytesseract.TesseractNotFoundError as e:
        raise EngineBootstrapError("Tesseract не найден в PATH") from e
    on_event(EngineEvent(EngineStage.LOADING_CORE.value, 1.0))

    # 2. Поднимаем процесс-воркер
    on_event(EngineEvent(EngineStage.INITIALIZING.value, 0.0))
    executor = ProcessPoolExecutor(max_workers=1, initializer=_init_worker)
    try:
        loop = asyncio.get_running_loop()
        worker_pid = await loop.run_in_executor(executor, _warmup)
        on_event(EngineEvent(EngineStage.INITIALIZING.value, 1.0))

        # 3. Модели языков
        on_event(EngineEvent(EngineStage.LOADING_LANGUAGE.value, 0.0))
        system_languages = await run_in_threadpool(_system_languages)
        tessdata_dir = await ensure_models(
            language,
            Path(cfg.tessdata_dir),
            cfg.tessdata_url,
            system_languages,
            on_progress=lambda fraction: on_event(
                EngineEvent(EngineStage.LOADING_LANGUAGE.value, fraction)
            ),
            client=client,
            timeout=cfg.download_timeout_seconds,
        )
    except BaseException:
        await run_in_threadpool(_stop_executor, executor)
        raise

    on_event(EngineEvent(EngineStage.INITIALIZED.value, 1.0))

    duration = int((time.perf_counter() - start) * 1000)
    logger.info(
        f"Движок создан: язык={language}, Tesseract {version}, "
        f"воркер pid={worker_pid}, модели={tessdata_dir or 'системные'} за {duration}ms"
    )

    return TesseractEngine(language, executor, tessdata_dir, cfg)

"""
Менеджер жизненного цикла движка распознавания.

Единственный владелец экземпляра движка:
    - acquire(language) — переиспользует движок того же языка
      или останавливает старый и создаёт новый
    - release() — останавливает текущий движок, идемпотентно

Гарантия: одновременно жив не больше одного движка.
acquire/release сериализованы через asyncio.Lock.
"""

import asyncio
import logging
import time
from typing import Optional

from local_ocr.services.tesseract_engine import (
    EngineFactory,
    EventCallback,
    RecognitionEngine,
    create_tesseract_engine,
)

logger = logging.getLogger(__name__)


class EngineManager:
    """
    Владелец единственного экземпляра движка.

    Attributes:
        created_count: сколько движков создано за время жизни менеджера
        released_count: сколько движков остановлено
    """

    def __init__(self, engine_factory: Optional[EngineFactory] = None):
        self._factory = engine_factory or create_tesseract_engine
        self._engine: Optional[RecognitionEngine] = None
        self._lock = asyncio.Lock()
        self.created_count = 0
        self.released_count = 0

    @property
    def engine(self) -> Optional[RecognitionEngine]:
        return self._engine

    @property
    def language(self) -> Optional[str]:
        return self._engine.language if self._engine is not None else None

    @property
    def is_alive(self) -> bool:
        return self._engine is not None

    async def acquire(self, language: str, on_event: EventCallback) -> RecognitionEngine:
        """
        Возвращает движок для языка.

        Если текущий движок привязан к тому же языку — он переиспользуется.
        Иначе текущий останавливается и создаётся новый. События создания
        (загрузка ядра, моделей) передаются в on_event без изменений.

        Args:
            language: строка языков Tesseract
            on_event: колбэк событий прогресса создания

        Returns:
            RecognitionEngine: готовый движок

        Raises:
            Exception: сырой сбой создания (после него движка нет)
        """
        async with self._lock:
            if self._engine is not None and self._engine.language == language:
                logger.info(f"Переиспользуем движок: {language}")
                return self._engine

            await self._teardown()

            logger.info(f"Создание движка: {language}")
            start = time.perf_counter()
            try:
                engine = await self._factory(language, on_event)
            except BaseException as e:
                logger.warning(f"Движок {language} не создан: {e!r}")
                raise

            self._engine = engine
            self.created_count += 1
            duration = int((time.perf_counter() - start) * 1000)
            logger.info(f"Движок {language} готов за {duration}ms")
            return engine

    async def release(self) -> None:
        """Останавливает текущий движок. Безопасно вызывать без движка."""
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            await engine.terminate()
        finally:
            self.released_count += 1
            logger.info(f"Движок {engine.language} освобождён")

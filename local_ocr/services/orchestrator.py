"""
Оркестратор задачи распознавания.

Связывает предобработку, менеджер движка и машину состояний:
    submit -> Preprocessing -> Recognizing -> Done | Error | Cancelled

Оркестратор — императивная оболочка вокруг чистых переходов
(state_machine.transition): применяет событие, уведомляет подписчиков,
выполняет эффекты (запуск этапов, отмена, освобождение движка).

Все методы вызываются из потока event loop. Тяжёлая работа уходит
в threadpool (Pillow) и в процесс движка (Tesseract).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool

from local_ocr.config import Settings, settings as default_settings
from local_ocr.schemas import (
    ACCEPTED_MEDIA_TYPES,
    ConditionedPayload,
    EngineEvent,
    ImageInput,
    JobSnapshot,
)
from local_ocr.services.engine_manager import EngineManager
from local_ocr.services.errors import (
    STAGE_BOOTSTRAP,
    STAGE_EXECUTION,
    UnsupportedInput,
    classify_failure,
)
from local_ocr.services.preprocessor import prepare
from local_ocr.services.state_machine import (
    Cancel,
    CancelPending,
    Effect,
    EngineProgress,
    Event,
    PreprocessDone,
    RecognitionDone,
    RecognitionFailed,
    Reject,
    ReleaseEngine,
    Reset,
    StartPreprocess,
    StartRecognition,
    Submit,
    transition,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[JobSnapshot], None]


@dataclass
class _ActiveJob:
    """Данные идущей задачи, которые не входят в наблюдаемое состояние."""

    job_id: int
    image: ImageInput
    language: str
    started_at: float
    payload: Optional[ConditionedPayload] = None


class JobOrchestrator:
    """
    Оркестратор единственной активной задачи распознавания.

    Публичный контракт для слоя представления:
        submit(image, language), cancel(), reset(), dispose(),
        state, subscribe(callback)
    """

    def __init__(
        self,
        engine_manager: Optional[EngineManager] = None,
        settings: Optional[Settings] = None,
        preprocess: Callable[[ImageInput, Settings], ConditionedPayload] = prepare,
    ):
        self._settings = settings or default_settings
        self._engines = engine_manager or EngineManager()
        self._preprocess = preprocess

        self._state = JobSnapshot()
        self._subscribers: list[Subscriber] = []
        self._job: Optional[_ActiveJob] = None
        self._job_task: Optional[asyncio.Task] = None
        self._releases: set[asyncio.Task] = set()
        self._last_job_id = 0
        self._disposed = False

    # -------------------------------------------------------------------------
    # Наблюдаемое состояние
    # -------------------------------------------------------------------------

    @property
    def state(self) -> JobSnapshot:
        return self._state

    @property
    def engine_manager(self) -> EngineManager:
        return self._engines

    @property
    def is_running(self) -> bool:
        return self._state.status.is_running

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Подписывает колбэк на изменения состояния.

        Колбэк сразу получает текущий снимок, затем — каждый новый.

        Returns:
            Callable: функция отписки
        """
        self._subscribers.append(callback)
        self._notify_one(callback, self._state)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Команды
    # -------------------------------------------------------------------------

    def submit(self, image: ImageInput, language: Optional[str] = None) -> None:
        """
        Запускает распознавание изображения.

        Неподдерживаемый тип файла сразу переводит состояние в Error
        (UnsupportedInput) без создания задачи и без обращения к движку.
        Вызов во время идущей задачи заменяет её (отмена + новый submit).

        Args:
            image: исходное изображение
            language: строка языков Tesseract (по умолчанию из настроек)

        Raises:
            RuntimeError: если оркестратор уже уничтожен
        """
        if self._disposed:
            raise RuntimeError("Оркестратор уже уничтожен")

        release_engine = not self._settings.keep_engine_on_cancel

        if image.media_type not in ACCEPTED_MEDIA_TYPES:
            logger.warning(f"Отклонён файл {image.name}: тип {image.media_type}")
            error = classify_failure(UnsupportedInput(image.media_type))
            self._job = None
            self._dispatch(Reject(error, file_name=image.name, release_engine=release_engine))
            return

        language = language or self._settings.default_language
        self._last_job_id += 1
        job_id = self._last_job_id

        logger.info(
            f"Задача #{job_id}: {image.name} ({image.media_type}, "
            f"{image.byte_length / (1024 * 1024):.2f} MB), язык={language}"
        )

        self._job = _ActiveJob(job_id, image, language, started_at=time.perf_counter())
        self._dispatch(Submit(job_id, language, image.name, release_engine=release_engine))

    def cancel(self) -> None:
        """
        Отменяет идущую задачу.

        Переход в Cancelled синхронный, освобождение движка — после.
        Вне Preprocessing/Recognizing ничего не делает.
        """
        if not self.is_running:
            return
        logger.info(f"Задача #{self._state.job_id}: отмена")
        self._dispatch(Cancel(release_engine=not self._settings.keep_engine_on_cancel))

    def reset(self) -> None:
        """
        Очищает состояние задачи. Живой движок сохраняется.

        Во время идущей задачи игнорируется.
        """
        if self.is_running:
            logger.warning("reset во время распознавания проигнорирован")
            return
        self._job = None
        self._dispatch(Reset())

    async def dispose(self) -> None:
        """
        Уничтожает оркестратор.

        Отменяет идущую задачу и безусловно освобождает движок.
        """
        if self._disposed:
            return
        self._disposed = True

        if self.is_running:
            self._dispatch(Cancel(release_engine=False))

        pending = [t for t in (self._job_task, *self._releases) if t is not None and not t.done()]
        if pending:
            await asyncio.wait(pending)

        await self._engines.release()
        self._subscribers.clear()
        logger.info("Оркестратор уничтожен, движок освобождён")

    async def wait(self) -> None:
        """Ждёт завершения текущего этапа задачи и фоновых освобождений."""
        while True:
            pending = [
                t for t in (self._job_task, *self._releases) if t is not None and not t.done()
            ]
            if not pending:
                return
            await asyncio.wait(pending)

    # -------------------------------------------------------------------------
    # Переходы и эффекты
    # -------------------------------------------------------------------------

    def _dispatch(self, event: Event) -> None:
        new_state, effects = transition(self._state, event)
        changed = new_state != self._state
        self._state = new_state

        if changed:
            for callback in list(self._subscribers):
                self._notify_one(callback, new_state)

        for effect in effects:
            self._run_effect(effect)

    def _notify_one(self, callback: Subscriber, snapshot: JobSnapshot) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception("Ошибка в подписчике состояния")

    def _run_effect(self, effect: Effect) -> None:
        if isinstance(effect, StartPreprocess):
            job = self._job
            if job is not None and job.job_id == effect.job_id:
                self._job_task = asyncio.get_running_loop().create_task(
                    self._run_preprocess(job)
                )
        elif isinstance(effect, StartRecognition):
            job = self._job
            if job is not None and job.job_id == effect.job_id:
                self._job_task = asyncio.get_running_loop().create_task(
                    self._run_recognition(job)
                )
        elif isinstance(effect, CancelPending):
            task = self._job_task
            if task is not None and not task.done():
                task.cancel()
        elif isinstance(effect, ReleaseEngine):
            task = asyncio.get_running_loop().create_task(self._engines.release())
            self._releases.add(task)
            task.add_done_callback(self._on_release_done)

    def _on_release_done(self, task: asyncio.Task) -> None:
        self._releases.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Ошибка освобождения движка: {exc!r}")

    # -------------------------------------------------------------------------
    # Этапы задачи
    # -------------------------------------------------------------------------

    async def _run_preprocess(self, job: _ActiveJob) -> None:
        start = time.perf_counter()
        try:
            payload = await run_in_threadpool(self._preprocess, job.image, self._settings)
        except UnsupportedInput as e:
            self._dispatch(RecognitionFailed(job.job_id, classify_failure(e)))
            return
        except Exception as e:
            # Предобработка best-effort: уходим с исходными байтами
            logger.warning(f"Задача #{job.job_id}: предобработка не удалась ({e!r}), оригинал")
            payload = ConditionedPayload(data=job.image.data, media_type=job.image.media_type)

        job.payload = payload
        duration = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"Задача #{job.job_id}: предобработка {duration}ms, "
            f"{job.image.byte_length} -> {payload.byte_length} байт"
        )

        self._dispatch(
            PreprocessDone(
                job.job_id,
                {
                    "media_type": payload.media_type,
                    "width": payload.width,
                    "height": payload.height,
                    "original_bytes": job.image.byte_length,
                    "bytes": payload.byte_length,
                    "resized": payload.resized,
                    "reencoded": payload.reencoded,
                },
            )
        )

    async def _run_recognition(self, job: _ActiveJob) -> None:
        def on_event(event: EngineEvent) -> None:
            self._dispatch(EngineProgress(job.job_id, event.stage, event.progress))

        # Освобождение прошлого движка должно закончиться до acquire
        if self._releases:
            await asyncio.wait(set(self._releases))

        stage = STAGE_BOOTSTRAP
        try:
            engine = await self._engines.acquire(job.language, on_event)
            stage = STAGE_EXECUTION
            result = await engine.recognize(job.payload, on_event)
        except asyncio.CancelledError:
            logger.info(f"Задача #{job.job_id}: распознавание прервано")
            raise
        except Exception as e:
            error = classify_failure(e, stage)
            logger.error(
                f"Задача #{job.job_id}: {error.kind.value} на этапе {stage}: {e!r}"
            )
            self._dispatch(RecognitionFailed(job.job_id, error))
            return

        total = int((time.perf_counter() - job.started_at) * 1000)
        logger.info(
            f"Задача #{job.job_id}: готово, {len(result.text)} симв., "
            f"уверенность {result.confidence:.0f}%, всего {total}ms"
        )
        self._dispatch(RecognitionDone(job.job_id, result.text))

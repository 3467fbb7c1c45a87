"""
Локальное приложение OCR — слой представления.

FastAPI на 127.0.0.1: принимает изображение, отдаёт состояние задачи,
прогресс и результат. Всё распознавание выполняется на этой же машине.

Эндпоинты:
    POST /job            — загрузка изображения и запуск распознавания
    POST /job/cancel     — отмена идущей задачи
    POST /job/reset      — сброс состояния
    GET  /job            — текущее состояние (фаза, прогресс, результат)
    GET  /job/events     — поток снимков состояния (NDJSON) до конца задачи
    GET  /job/result.txt — скачать распознанный текст
    GET  /languages      — установленные языки Tesseract
    GET  /health         — проверка Tesseract и движка

Запуск:
    python -m local_ocr.main
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

import pytesseract
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from local_ocr.config import settings
from local_ocr.schemas import EngineStage, ErrorInfo, ImageInput, JobSnapshot, JobStateResponse, Phase
from local_ocr.services.orchestrator import JobOrchestrator

# Настройка логгера
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [OCR-Local] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# Подписи под-этапов движка для пользователя
STAGE_LABELS = {
    EngineStage.LOADING_CORE.value: "Загрузка движка...",
    EngineStage.INITIALIZING.value: "Инициализация...",
    EngineStage.LOADING_LANGUAGE.value: "Загрузка модели языка...",
    EngineStage.INITIALIZED.value: "Движок готов.",
    EngineStage.RECOGNIZING.value: "Распознавание текста...",
}

PHASE_LABELS = {
    Phase.IDLE: "Загрузите изображение (PNG/JPG/WEBP)",
    Phase.PREPROCESSING: "Подготовка изображения...",
    Phase.RECOGNIZING: "Распознавание...",
    Phase.DONE: "Готово.",
    Phase.ERROR: "Ошибка.",
    Phase.CANCELLED: "Отменено.",
}


class UnicodeJSONResponse(JSONResponse):
    """JSON ответ с нормальным отображением кириллицы (без \\uXXXX экранирования)."""

    def render(self, content) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


def human_status(snapshot: JobSnapshot) -> str:
    """
    Подпись состояния для пользователя.

    Во время распознавания подпись берётся из под-этапа движка,
    неизвестные метки показываются как есть.
    """
    if snapshot.status == Phase.RECOGNIZING and snapshot.stage:
        return STAGE_LABELS.get(snapshot.stage, snapshot.stage)
    return PHASE_LABELS[snapshot.status]


def to_response(snapshot: JobSnapshot) -> JobStateResponse:
    error = None
    if snapshot.error is not None:
        error = ErrorInfo(
            kind=snapshot.error.kind.value,
            message=snapshot.error.message,
            hint=snapshot.error.hint,
        )

    return JobStateResponse(
        job_id=snapshot.job_id,
        status=snapshot.status.value,
        stage=snapshot.stage,
        human_status=human_status(snapshot),
        progress=snapshot.progress,
        result=snapshot.result,
        error=error,
        language=snapshot.language,
        file_name=snapshot.file_name,
        payload=snapshot.payload_info,
    )


def create_app(
    orchestrator_factory: Optional[Callable[[], JobOrchestrator]] = None,
) -> FastAPI:
    """
    Создаёт FastAPI приложение.

    Args:
        orchestrator_factory: фабрика оркестратора (для тестов);
            по умолчанию — оркестратор с движком Tesseract

    Returns:
        FastAPI: приложение
    """
    factory = orchestrator_factory or JobOrchestrator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.orchestrator = factory()
        logger.info("Оркестратор создан")
        try:
            yield
        finally:
            await app.state.orchestrator.dispose()

    app = FastAPI(
        title="Local OCR",
        description="Локальное распознавание текста на изображениях (Tesseract OCR)",
        version="1.0.0",
        default_response_class=UnicodeJSONResponse,
        lifespan=lifespan,
    )

    def get_orchestrator(request: Request) -> JobOrchestrator:
        return request.app.state.orchestrator

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """
        Проверка работоспособности.

        Returns:
            dict: доступность Tesseract, состояние движка, конфигурация
        """
        tesseract_ok = False
        try:
            tesseract_version = str(await run_in_threadpool(pytesseract.get_tesseract_version))
            tesseract_ok = True
        except Exception as e:
            tesseract_version = f"error: {e}"

        engines = get_orchestrator(request).engine_manager

        return {
            "status": "ok" if tesseract_ok else "degraded",
            "service": "local-ocr",
            "version": "1.0.0",
            "cpu_count": os.cpu_count(),
            "tesseract": {
                "available": tesseract_ok,
                "version": tesseract_version,
            },
            "engine": {
                "alive": engines.is_alive,
                "language": engines.language,
                "created": engines.created_count,
                "released": engines.released_count,
            },
            "config": {
                "max_file_size_mb": settings.max_file_size_mb,
                "max_dimension": settings.max_dimension,
                "size_threshold_bytes": settings.size_threshold_bytes,
                "jpeg_quality": settings.jpeg_quality,
                "ocr_oem": settings.ocr_oem,
                "ocr_psm": settings.ocr_psm,
                "default_language": settings.default_language,
            },
        }

    @app.post("/job", response_model=JobStateResponse)
    async def submit_job(
        request: Request,
        file: UploadFile = File(..., description="Изображение (PNG/JPEG/WEBP)"),
        language: Optional[str] = Form(default=None, description="Языки Tesseract: eng, rus+eng"),
        wait: bool = Form(default=False, description="Дождаться завершения задачи"),
    ) -> JobStateResponse:
        """
        Запускает распознавание изображения.

        Пока задача идёт, новая загрузка отклоняется (409).
        Неподдерживаемый тип файла не ошибка HTTP: задача сразу
        переходит в Error с видом UnsupportedInput.

        Raises:
            HTTPException: 409 если задача уже идёт, 413 если файл слишком большой
        """
        orchestrator = get_orchestrator(request)

        if orchestrator.is_running:
            raise HTTPException(
                status_code=409,
                detail={
                    "error": "job_running",
                    "message": "Распознавание уже идёт: дождитесь завершения или отмените",
                },
            )

        data = await file.read()
        max_size = settings.max_file_size_mb * 1024 * 1024
        if len(data) > max_size:
            raise HTTPException(
                status_code=413,
                detail={
                    "error": "file_too_large",
                    "message": f"Файл слишком большой: {len(data)} байт, "
                    f"максимум: {settings.max_file_size_mb} МБ",
                },
            )

        image = ImageInput(
            data=data,
            media_type=file.content_type or "",
            name=file.filename or "image",
        )
        orchestrator.submit(image, language)

        if wait:
            await orchestrator.wait()

        return to_response(orchestrator.state)

    @app.post("/job/cancel", response_model=JobStateResponse)
    async def cancel_job(request: Request) -> JobStateResponse:
        """Отменяет идущую задачу (409 если задачи нет)."""
        orchestrator = get_orchestrator(request)
        if not orchestrator.is_running:
            raise HTTPException(
                status_code=409,
                detail={"error": "job_not_running", "message": "Нет задачи для отмены"},
            )
        orchestrator.cancel()
        return to_response(orchestrator.state)

    @app.post("/job/reset", response_model=JobStateResponse)
    async def reset_job(request: Request) -> JobStateResponse:
        """Сбрасывает состояние (409 во время распознавания)."""
        orchestrator = get_orchestrator(request)
        if orchestrator.is_running:
            raise HTTPException(
                status_code=409,
                detail={"error": "job_running", "message": "Сначала отмените распознавание"},
            )
        orchestrator.reset()
        return to_response(orchestrator.state)

    @app.get("/job", response_model=JobStateResponse)
    async def get_job(request: Request) -> JobStateResponse:
        return to_response(get_orchestrator(request).state)

    @app.get("/job/events")
    async def job_events(request: Request) -> StreamingResponse:
        """
        Поток снимков состояния в формате NDJSON.

        Первая строка — текущее состояние, затем каждое изменение.
        Поток закрывается, когда задача не идёт (Idle или терминальная фаза).
        """
        orchestrator = get_orchestrator(request)

        async def stream():
            # Подписка живёт ровно столько, сколько итерируется тело ответа
            queue: asyncio.Queue[JobSnapshot] = asyncio.Queue()
            unsubscribe = orchestrator.subscribe(queue.put_nowait)
            try:
                while True:
                    snapshot = await queue.get()
                    line = to_response(snapshot).model_dump_json()
                    yield line + "\n"
                    if not snapshot.status.is_running:
                        break
            finally:
                unsubscribe()

        return StreamingResponse(stream(), media_type="application/x-ndjson")

    @app.get("/job/result.txt")
    async def download_result(request: Request) -> PlainTextResponse:
        """Скачивание распознанного текста (404 если результата нет)."""
        snapshot = get_orchestrator(request).state
        if snapshot.result is None:
            raise HTTPException(
                status_code=404,
                detail={"error": "no_result", "message": "Распознанного текста нет"},
            )
        return PlainTextResponse(
            snapshot.result,
            headers={"Content-Disposition": 'attachment; filename="ocr.txt"'},
        )

    @app.get("/languages")
    async def list_languages() -> dict:
        """Языки, установленные вместе с Tesseract."""
        try:
            languages = await run_in_threadpool(pytesseract.get_languages, config="")
        except Exception as e:
            logger.warning(f"Не удалось получить список языков: {e}")
            raise HTTPException(
                status_code=503,
                detail={"error": "tesseract_unavailable", "message": str(e)},
            )
        return {
            "default": settings.default_language,
            "installed": sorted(languages),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Запуск Local OCR на {settings.host}:{settings.port}")
    logger.info(f"CPU ядер: {os.cpu_count()}")

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info",
    )

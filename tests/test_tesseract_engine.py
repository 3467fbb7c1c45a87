"""
Тесты движка Tesseract без бинарника Tesseract.

Сборка текста проверяется на словарях в формате image_to_data,
загрузка моделей — через httpx.MockTransport, создание движка —
с подменой проверки версии и пула воркеров.
"""

import asyncio
import subprocess
import sys
import time
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from pathlib import Path

import httpx
import pytest
import pytesseract

from conftest import wait_for
from local_ocr.schemas import ConditionedPayload, EngineStage, ErrorKind
from local_ocr.services import tesseract_engine
from local_ocr.services.errors import HINT_BACKEND, STAGE_BOOTSTRAP, EngineBootstrapError, classify_failure
from local_ocr.services.tessdata import (
    cached_model_path,
    download_model,
    ensure_models,
    split_languages,
)
from local_ocr.services.tesseract_engine import (
    TesseractEngine,
    assemble_text_from_data,
    average_confidence,
    create_tesseract_engine,
)

BASE_URL = "https://models.example/tessdata"
MODEL = b"\x00traineddata" * 4096


def _data(rows):
    """rows: (block, par, line, word, conf)"""
    return {
        "block_num": [r[0] for r in rows],
        "par_num": [r[1] for r in rows],
        "line_num": [r[2] for r in rows],
        "text": [r[3] for r in rows],
        "conf": [r[4] for r in rows],
    }


def _model_transport(requests: list, status: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request.url.path)
        if status != 200:
            return httpx.Response(status, request=request)
        return httpx.Response(200, content=MODEL, request=request)

    return httpx.MockTransport(handler)


# =============================================================================
# Сборка результата
# =============================================================================


def test_assemble_text_keeps_lines_and_blocks():
    data = _data(
        [
            (1, 1, 1, "", -1),
            (1, 1, 1, "Hello", 95),
            (1, 1, 1, "world", 90),
            (1, 1, 2, "second", 85),
            (2, 1, 1, "Next", 80),
            (2, 1, 1, "  ", -1),
            (2, 1, 1, "block", "70.5"),
        ]
    )

    text = assemble_text_from_data(data)

    assert text == "Hello world\nsecond\n\nNext block"


def test_assemble_text_empty_page():
    assert assemble_text_from_data(_data([(1, 1, 1, "", -1)])) == ""


def test_average_confidence_ignores_non_words():
    data = _data([(1, 1, 1, "", -1), (1, 1, 1, "a", 90), (1, 1, 1, "b", "80"), (1, 1, 1, "c", None)])

    assert average_confidence(data) == 85.0
    assert average_confidence(_data([])) == 0.0


# =============================================================================
# Модели языков
# =============================================================================


def test_split_languages():
    assert split_languages("rus+eng") == ["rus", "eng"]
    assert split_languages(" eng + ") == ["eng"]
    assert split_languages("") == []


def test_download_model_reports_progress(tmp_path):
    requests = []
    progress = []

    async def scenario():
        async with httpx.AsyncClient(transport=_model_transport(requests)) as client:
            return await download_model("eng", tmp_path, BASE_URL, progress.append, client=client)

    path = asyncio.run(scenario())

    assert path == cached_model_path(tmp_path, "eng")
    assert path.read_bytes() == MODEL
    assert requests == ["/tessdata/eng.traineddata"]
    assert progress[-1] == 1.0
    assert progress == sorted(progress)


def test_failed_download_leaves_no_partial_file(tmp_path):
    async def scenario():
        async with httpx.AsyncClient(transport=_model_transport([], status=404)) as client:
            await download_model("xyz", tmp_path, BASE_URL, client=client)

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(scenario())

    assert list(tmp_path.iterdir()) == []


def test_system_models_need_no_cache(tmp_path):
    requests = []
    progress = []

    async def scenario():
        async with httpx.AsyncClient(transport=_model_transport(requests)) as client:
            return await ensure_models(
                "rus+eng", tmp_path, BASE_URL, {"eng", "rus", "osd"}, progress.append, client=client
            )

    assert asyncio.run(scenario()) is None
    assert requests == []
    assert progress == [1.0]


def test_missing_model_is_downloaded_with_companions(tmp_path):
    requests = []
    progress = []

    async def scenario():
        async with httpx.AsyncClient(transport=_model_transport(requests)) as client:
            return await ensure_models(
                "rus+eng", tmp_path, BASE_URL, {"eng"}, progress.append, client=client
            )

    result = asyncio.run(scenario())

    assert result == tmp_path
    assert requests == ["/tessdata/rus.traineddata", "/tessdata/eng.traineddata"]
    assert cached_model_path(tmp_path, "rus").exists()
    assert cached_model_path(tmp_path, "eng").exists()
    assert progress == sorted(progress)
    assert progress[-1] == 1.0


def test_cached_models_are_not_downloaded_again(tmp_path):
    cached_model_path(tmp_path, "eng").write_bytes(MODEL)
    requests = []

    async def scenario():
        async with httpx.AsyncClient(transport=_model_transport(requests)) as client:
            return await ensure_models("eng", tmp_path, BASE_URL, set(), client=client)

    assert asyncio.run(scenario()) == tmp_path
    assert requests == []


def test_empty_language_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        asyncio.run(ensure_models("+", tmp_path, BASE_URL, set()))


# =============================================================================
# Создание движка
# =============================================================================


@pytest.fixture()
def thread_workers(monkeypatch):
    """Пул потоков вместо пула процессов и Tesseract «версии 5»."""
    created = []

    def make_executor(max_workers, **kwargs):
        # initializer не передаём: setpgrp в потоке сменил бы группу теста
        executor = ThreadPoolExecutor(max_workers=max_workers)
        created.append(executor)
        return executor

    monkeypatch.setattr(tesseract_engine, "ProcessPoolExecutor", make_executor)
    monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda: "5.3.0")
    monkeypatch.setattr(tesseract_engine, "_system_languages", lambda: {"eng"})
    yield created
    for executor in created:
        executor.shutdown(wait=True)


def test_missing_tesseract_is_bootstrap_error(monkeypatch, test_settings):
    def not_found():
        raise pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(pytesseract, "get_tesseract_version", not_found)
    events = []

    with pytest.raises(EngineBootstrapError) as exc_info:
        asyncio.run(create_tesseract_engine("eng", events.append, settings=test_settings))

    error = classify_failure(exc_info.value, STAGE_BOOTSTRAP)
    assert error.kind == ErrorKind.ENGINE_BOOTSTRAP_FAILURE
    assert error.hint == HINT_BACKEND
    assert [e.stage for e in events] == [EngineStage.LOADING_CORE.value]


def test_bootstrap_reports_all_stages(thread_workers, test_settings):
    events = []

    async def scenario():
        async with httpx.AsyncClient(transport=_model_transport([])) as client:
            engine = await create_tesseract_engine(
                "rus", events.append, settings=test_settings, client=client
            )
        await engine.terminate()
        return engine

    engine = asyncio.run(scenario())

    stages = []
    for event in events:
        if not stages or stages[-1] != event.stage:
            stages.append(event.stage)
    assert stages == [
        EngineStage.LOADING_CORE.value,
        EngineStage.INITIALIZING.value,
        EngineStage.LOADING_LANGUAGE.value,
        EngineStage.INITIALIZED.value,
    ]
    assert engine.language == "rus"
    assert engine.is_terminated
    assert cached_model_path(test_settings.tessdata_dir, "rus").exists()


def test_failed_model_download_stops_worker(thread_workers, test_settings):
    async def scenario():
        async with httpx.AsyncClient(transport=_model_transport([], status=404)) as client:
            await create_tesseract_engine("xyz", lambda e: None, settings=test_settings, client=client)

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(scenario())

    assert len(thread_workers) == 1
    assert thread_workers[0]._shutdown


def test_tesseract_config_and_terminate(test_settings, tmp_path):
    engine = TesseractEngine("eng", ProcessPoolExecutor(max_workers=1), tmp_path, test_settings)

    config = engine._tesseract_config()
    assert "--oem 3" in config and "--psm 3" in config
    assert str(tmp_path) in config

    async def scenario():
        await engine.terminate()
        await engine.terminate()
        payload = ConditionedPayload(data=b"", media_type="image/png")
        with pytest.raises(RuntimeError):
            await engine.recognize(payload, lambda e: None)

    asyncio.run(scenario())
    assert engine.is_terminated


def _pid_running(pid: int) -> bool:
    """Процесс существует и не зомби (зомби может долго ждать reaper в контейнере)."""
    stat = Path(f"/proc/{pid}/stat")
    try:
        state = stat.read_text().rsplit(")", 1)[1].split()[0]
    except (FileNotFoundError, ProcessLookupError):
        return False
    return state != "Z"


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="нужен /proc и группы процессов")
def test_terminate_kills_busy_worker_and_its_children(test_settings, tmp_path):
    pid_file = tmp_path / "child.pid"
    # Долгий дочерний процесс воркера на месте tesseract
    command = ["sh", "-c", f'echo $$ > "{pid_file}"; exec sleep 60']

    async def scenario():
        executor = ProcessPoolExecutor(max_workers=1, initializer=tesseract_engine._init_worker)
        engine = TesseractEngine("eng", executor, None, test_settings)

        loop = asyncio.get_running_loop()
        busy = loop.run_in_executor(executor, subprocess.run, command)
        await wait_for(lambda: pid_file.exists() and pid_file.read_text().strip(), timeout=10)
        workers = list(executor._processes.values())

        # Как при отмене: сначала задача, затем движок
        busy.cancel()
        await engine.terminate()
        return engine, workers, int(pid_file.read_text())

    engine, workers, child_pid = asyncio.run(scenario())

    assert engine.is_terminated
    assert workers
    assert [p.is_alive() for p in workers] == [False] * len(workers)

    deadline = time.monotonic() + 5
    while _pid_running(child_pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _pid_running(child_pid)

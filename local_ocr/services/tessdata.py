"""
Загрузка моделей языков Tesseract (traineddata).

Модель ищется в трёх местах по порядку:
    1. Локальный кэш (OCR_TESSDATA_DIR)
    2. Системный tessdata установленного Tesseract
    3. Скачивание из OCR_TESSDATA_URL в кэш

Скачивание потоковое, прогресс считается по Content-Length.
Файл пишется во временный и переименовывается атомарно,
поэтому оборванная загрузка не оставляет битую модель в кэше.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


def split_languages(language: str) -> list[str]:
    """
    Разбивает строку языков Tesseract ("rus+eng") на коды.

    Args:
        language: строка языков

    Returns:
        list[str]: коды языков без пустых элементов
    """
    return [code.strip() for code in language.split("+") if code.strip()]


def cached_model_path(tessdata_dir: Path, code: str) -> Path:
    return Path(tessdata_dir) / f"{code}.traineddata"


async def download_model(
    code: str,
    tessdata_dir: Path,
    base_url: str,
    on_progress: Optional[ProgressCallback] = None,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 60.0,
) -> Path:
    """
    Скачивает модель языка в кэш.

    Args:
        code: код языка ("eng", "rus", ...)
        tessdata_dir: каталог кэша
        base_url: базовый URL репозитория моделей
        on_progress: колбэк доли скачанного (0..1)
        client: готовый httpx клиент (для тестов); иначе создаётся свой
        timeout: таймаут сетевых операций в секундах

    Returns:
        Path: путь к скачанной модели

    Raises:
        httpx.HTTPError: при сетевых ошибках и ответах не 2xx
    """
    target = cached_model_path(tessdata_dir, code)
    target.parent.mkdir(parents=True, exist_ok=True)
    url = f"{base_url.rstrip('/')}/{code}.traineddata"

    logger.info(f"Скачивание модели {code}: {url}")

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), follow_redirects=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{code}.", suffix=".part", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as tmp_file:
            async with client.stream("GET", url) as response:
                response.raise_for_status()

                total = int(response.headers.get("Content-Length") or 0)
                received = 0

                async for chunk in response.aiter_bytes():
                    tmp_file.write(chunk)
                    received += len(chunk)
                    if on_progress and total > 0:
                        on_progress(min(1.0, received / total))

        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    finally:
        if own_client:
            await client.aclose()

    if on_progress:
        on_progress(1.0)

    logger.info(f"Модель {code} сохранена: {target} ({target.stat().st_size} байт)")
    return target


async def ensure_models(
    language: str,
    tessdata_dir: Path,
    base_url: str,
    system_languages: set[str],
    on_progress: Optional[ProgressCallback] = None,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 60.0,
) -> Optional[Path]:
    """
    Гарантирует наличие моделей для всех языков строки.

    Args:
        language: строка языков Tesseract ("rus+eng")
        tessdata_dir: каталог кэша
        base_url: базовый URL репозитория моделей
        system_languages: языки, установленные вместе с Tesseract
        on_progress: колбэк общей доли готовности (0..1)
        client: готовый httpx клиент (для тестов)
        timeout: таймаут скачивания

    Returns:
        Path: каталог кэша, если нужен --tessdata-dir; None если хватает системных моделей
    """
    codes = split_languages(language)
    if not codes:
        raise ValueError("Не указан язык распознавания")

    cached = [code for code in codes if cached_model_path(tessdata_dir, code).exists()]
    missing = [code for code in codes if code not in cached and code not in system_languages]

    # Все модели уже в системе, кэш не нужен
    if not cached and not missing:
        if on_progress:
            on_progress(1.0)
        return None

    # Tesseract читает модели из одного каталога: докачиваем системные в кэш тоже
    to_fetch = [code for code in codes if code not in cached]

    for index, code in enumerate(to_fetch):

        def report(fraction: float, index: int = index) -> None:
            if on_progress:
                on_progress((index + fraction) / len(to_fetch))

        await download_model(
            code,
            tessdata_dir,
            base_url,
            on_progress=report,
            client=client,
            timeout=timeout,
        )

    if on_progress:
        on_progress(1.0)

    return Path(tessdata_dir)

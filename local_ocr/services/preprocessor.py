"""
Предобработка изображения перед OCR.

Приводит произвольное изображение к виду, удобному для движка:
    - Resize до MAX_DIMENSION по длинной стороне (LANCZOS)
    - Перекодирование в JPEG (quality 85)

Гарантия «без сожалений»: результат никогда не больше оригинала.
Если перекодирование не уменьшило размер — возвращается оригинал.

Ошибки декодирования не пробрасываются: предобработка best-effort,
при сбое в движок уходят исходные байты.
"""

import io
import logging
import time
from typing import Optional

from PIL import Image, ImageOps

from local_ocr.config import Settings, settings as default_settings
from local_ocr.schemas import ConditionedPayload, ImageInput
from local_ocr.services.errors import UnsupportedInput

logger = logging.getLogger(__name__)


def _original(image: ImageInput, width: int = 0, height: int = 0) -> ConditionedPayload:
    return ConditionedPayload(
        data=image.data,
        media_type=image.media_type,
        width=width,
        height=height,
    )


def _flatten_for_jpeg(img: Image.Image) -> Image.Image:
    """
    Приводит изображение к RGB для JPEG.

    Прозрачность (RGBA, LA, P с transparency) заливается белым,
    чтобы текст на прозрачном фоне не превратился в чёрное на чёрном.
    """
    if img.mode == "RGB":
        return img.copy()

    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        try:
            background = Image.new("RGB", rgba.size, "white")
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        finally:
            rgba.close()

    return img.convert("RGB")


def compute_target_size(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """
    Вычисляет размер после уменьшения.

    scale = min(1, max_dimension / longest), стороны округляются.

    Args:
        width: исходная ширина
        height: исходная высота
        max_dimension: предел по длинной стороне

    Returns:
        tuple[int, int]: (ширина, высота), каждая не меньше 1
    """
    longest = max(width, height)
    scale = min(1.0, max_dimension / longest) if longest > 0 else 1.0
    return max(1, round(width * scale)), max(1, round(height * scale))


def prepare(image: ImageInput, settings: Optional[Settings] = None) -> ConditionedPayload:
    """
    Готовит изображение к распознаванию.

    Алгоритм:
        1. Проверка MIME типа (image/*), иначе UnsupportedInput
        2. Декодирование (при ошибке — оригинал без изменений)
        3. Если длинная сторона <= max_dimension и размер <= size_threshold — оригинал
        4. Resize (LANCZOS) + JPEG quality
        5. Если JPEG не строго меньше оригинала — оригинал

    Все промежуточные битмапы закрываются на любом пути выхода.

    Args:
        image: исходное изображение
        settings: настройки (по умолчанию глобальные)

    Returns:
        ConditionedPayload: подготовленные байты

    Raises:
        UnsupportedInput: если MIME тип не image/*
    """
    cfg = settings or default_settings

    if not (image.media_type or "").startswith("image/"):
        raise UnsupportedInput(image.media_type)

    start = time.perf_counter()
    original_size = len(image.data)

    try:
        with Image.open(io.BytesIO(image.data)) as source:
            source.load()
            # Учитываем EXIF ориентацию, иначе ширина/высота перепутаны
            oriented = ImageOps.exif_transpose(source)
            try:
                width, height = oriented.size
                longest = max(width, height)

                if longest <= cfg.max_dimension and original_size <= cfg.size_threshold_bytes:
                    logger.debug(
                        f"Предобработка не нужна: {image.name} {width}x{height}, "
                        f"{original_size} байт"
                    )
                    return _original(image, width, height)

                target = compute_target_size(width, height, cfg.max_dimension)
                encoded = _resize_and_encode(oriented, target, cfg.jpeg_quality)
            finally:
                if oriented is not source:
                    oriented.close()
    except Exception as e:
        logger.warning(f"Не удалось декодировать {image.name}, используем оригинал: {e}")
        return _original(image)

    duration = int((time.perf_counter() - start) * 1000)

    # Без сожалений: только строго меньший результат
    if len(encoded) >= original_size:
        logger.info(
            f"Перекодирование не уменьшило {image.name} "
            f"({len(encoded)} >= {original_size} байт), используем оригинал"
        )
        return _original(image, width, height)

    logger.info(
        f"Предобработка {image.name}: {width}x{height} -> {target[0]}x{target[1]}, "
        f"{original_size} -> {len(encoded)} байт за {duration}ms"
    )

    return ConditionedPayload(
        data=encoded,
        media_type="image/jpeg",
        width=target[0],
        height=target[1],
        resized=target != (width, height),
        reencoded=True,
    )


def _resize_and_encode(img: Image.Image, target: tuple[int, int], quality: int) -> bytes:
    """
    Уменьшает изображение и кодирует в JPEG.

    Args:
        img: декодированное изображение
        target: итоговый размер (ширина, высота)
        quality: качество JPEG

    Returns:
        bytes: JPEG байты
    """
    rgb = _flatten_for_jpeg(img)
    try:
        if rgb.size != target:
            resized = rgb.resize(target, Image.Resampling.LANCZOS)
            rgb.close()
            rgb = resized

        buffer = io.BytesIO()
        rgb.save(buffer, format="JPEG", quality=quality, optimize=True)
        return buffer.getvalue()
    finally:
        rgb.close()

"""
Конфигурация локального OCR.

Все значения читаются из .env файла (или переменных окружения).
В отличие от серверной версии у каждого параметра есть дефолт:
оркестратор используется как библиотека и должен работать без .env.

Единый префикс: OCR_
"""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Настройки локального OCR.

    Читает переменные с префиксом OCR_ из .env файла.
    """

    model_config = SettingsConfigDict(
        env_prefix="OCR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Сервер (только localhost) ---
    host: str = "127.0.0.1"
    port: int = 8000

    # --- Лимиты загрузки ---
    max_file_size_mb: int = 50

    # --- Язык по умолчанию ---
    default_language: str = "eng"

    # --- Предобработка изображения ---
    # Длинная сторона в пикселях, больше которой картинка уменьшается
    max_dimension: int = 2200
    # Размер в байтах, больше которого картинка перекодируется
    size_threshold_bytes: int = 3 * 1024 * 1024
    # Качество JPEG при перекодировании (0.85)
    jpeg_quality: int = 85

    # --- OCR: Tesseract ---
    ocr_oem: int = 3
    ocr_psm: int = 3

    # --- Модели языков (traineddata) ---
    tessdata_dir: Path = Path.home() / ".cache" / "local-ocr" / "tessdata"
    tessdata_url: str = "https://github.com/tesseract-ocr/tessdata_fast/raw/main"
    download_timeout_seconds: float = 60.0

    # --- Движок ---
    # Сохранять движок после отмены (по умолчанию движок уничтожается)
    keep_engine_on_cancel: bool = False


# Глобальный экземпляр настроек
settings = Settings()

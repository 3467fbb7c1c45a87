"""
Общие фикстуры и подставные движки для тестов.

FakeEngine повторяет контракт RecognitionEngine без Tesseract:
сообщает те же под-этапы, умеет «зависать» до сигнала и падать
с заданной ошибкой.
"""

import asyncio
import io
import sys
import threading
from pathlib import Path
from typing import Optional

import pytest
from PIL import Image, ImageDraw

# Добавляем корневую папку проекта в путь
sys.path.insert(0, str(Path(__file__).parent.parent))

from local_ocr.config import Settings
from local_ocr.schemas import EngineEvent, EngineStage, JobSnapshot, RecognitionResult


class FakeEngine:
    """Подставной движок, привязанный к языку."""

    def __init__(self, factory: "FakeEngineFactory", language: str):
        self.factory = factory
        self.language = language
        self.terminated = False
        self.recognize_calls = 0
        self.waiting = False

    async def recognize(self, payload, on_event) -> RecognitionResult:
        self.recognize_calls += 1
        on_event(EngineEvent(EngineStage.RECOGNIZING.value, 0.0))
        on_event(EngineEvent(EngineStage.RECOGNIZING.value, 0.5))

        self.waiting = True
        try:
            # threading.Event: тест может отпустить движок из другого потока
            while self.factory.hold.is_set():
                await asyncio.sleep(0.005)
        finally:
            self.waiting = False

        if self.factory.recognize_error is not None:
            raise self.factory.recognize_error

        on_event(EngineEvent(EngineStage.RECOGNIZING.value, 1.0))
        return RecognitionResult(text=f"{self.factory.text} [{self.language}]", confidence=91.0)

    async def terminate(self) -> None:
        self.terminated = True


class FakeEngineFactory:
    """
    Фабрика подставных движков.

    Attributes:
        engines: все созданные движки
        hold: пока установлен, recognize не завершается
        recognize_error: ошибка распознавания
        bootstrap_error: ошибка создания движка
    """

    def __init__(self, text: str = "Hello OCR"):
        self.text = text
        self.engines: list[FakeEngine] = []
        self.hold = threading.Event()
        self.recognize_error: Optional[BaseException] = None
        self.bootstrap_error: Optional[BaseException] = None
        self.max_alive = 0

    @property
    def alive(self) -> list[FakeEngine]:
        return [e for e in self.engines if not e.terminated]

    async def __call__(self, language: str, on_event) -> FakeEngine:
        for stage in (
            EngineStage.LOADING_CORE,
            EngineStage.INITIALIZING,
            EngineStage.LOADING_LANGUAGE,
        ):
            on_event(EngineEvent(stage.value, 0.0))
            await asyncio.sleep(0)
            on_event(EngineEvent(stage.value, 1.0))

        if self.bootstrap_error is not None:
            raise self.bootstrap_error

        on_event(EngineEvent(EngineStage.INITIALIZED.value, 1.0))
        engine = FakeEngine(self, language)
        self.engines.append(engine)
        self.max_alive = max(self.max_alive, len(self.alive))
        return engine


def make_image_bytes(
    width: int,
    height: int,
    fmt: str = "PNG",
    mode: str = "RGB",
    **save_kwargs,
) -> bytes:
    """Рисует простую «страницу» с прямоугольниками-строками."""
    background = (255, 255, 255, 0) if mode == "RGBA" else "white"
    img = Image.new(mode, (width, height), background)
    draw = ImageDraw.Draw(img)
    step = max(4, height // 20)
    for y in range(step, height - step, step):
        draw.rectangle([width // 10, y, width - width // 10, y + step // 3], fill="black")
    buffer = io.BytesIO()
    img.save(buffer, format=fmt, **save_kwargs)
    img.close()
    return buffer.getvalue()


def make_noise_jpeg(width: int, height: int, quality: int = 90) -> bytes:
    img = Image.effect_noise((width, height), 64).convert("RGB")
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    img.close()
    return buffer.getvalue()


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """Ждёт выполнения условия, опрашивая event loop."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Условие не выполнено за отведённое время")
        await asyncio.sleep(0.005)


def assert_terminal_exclusive(snapshot: JobSnapshot) -> None:
    """В терминальной фазе заполнено ровно одно из result/error."""
    assert snapshot.status.is_terminal
    assert (snapshot.result is None) != (snapshot.error is None)


@pytest.fixture()
def test_settings(tmp_path) -> Settings:
    return Settings(_env_file=None, tessdata_dir=tmp_path / "tessdata")


@pytest.fixture()
def factory() -> FakeEngineFactory:
    return FakeEngineFactory()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_image_bytes(400, 300)

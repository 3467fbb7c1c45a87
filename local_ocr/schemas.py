"""
Схемы данных локального OCR.

Внутренние структуры для обмена между компонентами:
    - Словарь фаз задачи и под-этапов движка (стабильный контракт для UI)
    - Входное изображение и подготовленный payload
    - Классифицированная ошибка
    - Снимок наблюдаемого состояния задачи
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel

# Типы изображений, которые принимает submit
ACCEPTED_MEDIA_TYPES = frozenset({"image/png", "image/jpeg", "image/webp"})


class Phase(str, Enum):
    """
    Фаза задачи распознавания.

    Значения — часть публичного контракта: фронтенд локализует их сам.
    """

    IDLE = "Idle"
    PREPROCESSING = "Preprocessing"
    RECOGNIZING = "Recognizing"
    DONE = "Done"
    ERROR = "Error"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def is_running(self) -> bool:
        return self in (Phase.PREPROCESSING, Phase.RECOGNIZING)


TERMINAL_PHASES = frozenset({Phase.DONE, Phase.ERROR, Phase.CANCELLED})


class EngineStage(str, Enum):
    """
    Под-этапы движка внутри фазы Recognizing.

    Метки совпадают с теми, что сообщает сам Tesseract-движок.
    """

    LOADING_CORE = "loading tesseract core"
    INITIALIZING = "initializing tesseract"
    LOADING_LANGUAGE = "loading language traineddata"
    INITIALIZED = "initialized tesseract"
    RECOGNIZING = "recognizing text"


class ErrorKind(str, Enum):
    """Таксономия ошибок, видимых пользователю."""

    UNSUPPORTED_INPUT = "UnsupportedInput"
    ENGINE_BOOTSTRAP_FAILURE = "EngineBootstrapFailure"
    ENGINE_EXECUTION_FAILURE = "EngineExecutionFailure"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class ImageInput:
    """
    Исходное изображение от пользователя.

    Attributes:
        data: байты файла
        media_type: заявленный MIME тип (image/png, ...)
        name: имя файла для логов
        byte_length: размер в байтах, всегда равен len(data)
    """

    data: bytes
    media_type: str
    name: str = "image"
    byte_length: int = -1

    def __post_init__(self) -> None:
        if self.byte_length < 0:
            object.__setattr__(self, "byte_length", len(self.data))
        elif self.byte_length != len(self.data):
            raise ValueError(
                f"byte_length={self.byte_length} не совпадает с размером данных {len(self.data)}"
            )


@dataclass(frozen=True)
class ConditionedPayload:
    """
    Изображение, которое реально уходит в движок.

    Attributes:
        data: байты (исходные или перекодированные)
        media_type: фактический MIME тип данных
        width: ширина в пикселях (0 если декодировать не удалось)
        height: высота в пикселях (0 если декодировать не удалось)
        resized: было ли уменьшение
        reencoded: были ли байты перекодированы
    """

    data: bytes
    media_type: str
    width: int = 0
    height: int = 0
    resized: bool = False
    reencoded: bool = False

    @property
    def byte_length(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class EngineEvent:
    """
    Сырое событие прогресса от движка.

    Attributes:
        stage: метка этапа (обычно значение EngineStage)
        progress: доля выполнения этапа 0..1 (None — только смена метки)
    """

    stage: str
    progress: Optional[float] = None


@dataclass(frozen=True)
class RecognitionResult:
    """
    Результат распознавания.

    Attributes:
        text: распознанный текст
        confidence: средняя уверенность (0-100)
    """

    text: str
    confidence: float = 0.0


@dataclass(frozen=True)
class ClassifiedError:
    """
    Ошибка после классификации.

    Attributes:
        kind: вид ошибки из таксономии
        message: текст для пользователя (или сырое сообщение исключения)
        hint: подсказка, что делать дальше
    """

    kind: ErrorKind
    message: str
    hint: Optional[str] = None


@dataclass(frozen=True)
class JobSnapshot:
    """
    Наблюдаемое состояние оркестратора.

    Передаётся подписчикам при каждом изменении.

    Attributes:
        job_id: идентификатор текущей задачи (0 — задачи нет)
        status: фаза
        stage: метка под-этапа движка
        progress: процент 0..100
        result: распознанный текст (только в Done)
        error: классифицированная ошибка (только в Error/Cancelled)
        language: язык задачи
        file_name: имя исходного файла
        payload_info: сведения о предобработке
    """

    job_id: int = 0
    status: Phase = Phase.IDLE
    stage: Optional[str] = None
    progress: int = 0
    result: Optional[str] = None
    error: Optional[ClassifiedError] = None
    language: Optional[str] = None
    file_name: Optional[str] = None
    payload_info: dict = field(default_factory=dict)


# =============================================================================
# Pydantic модели для HTTP ответов
# =============================================================================


class ErrorInfo(BaseModel):
    """
    Ошибка в ответе API.

    Attributes:
        kind: вид ошибки (UnsupportedInput, EngineBootstrapFailure, ...)
        message: сообщение
        hint: подсказка
    """

    kind: str
    message: str
    hint: Optional[str] = None


class JobStateResponse(BaseModel):
    """
    Состояние задачи для фронтенда.

    Attributes:
        job_id: идентификатор задачи (0 — задачи нет)
        status: фаза (Idle, Preprocessing, Recognizing, Done, Error, Cancelled)
        stage: под-этап движка
        human_status: подпись для пользователя
        progress: процент 0..100
        result: распознанный текст
        error: ошибка
        language: язык задачи
        file_name: имя файла
        payload: сведения о предобработке
    """

    job_id: int
    status: str
    stage: Optional[str] = None
    human_status: str
    progress: int
    result: Optional[str] = None
    error: Optional[ErrorInfo] = None
    language: Optional[str] = None
    file_name: Optional[str] = None
    payload: dict = {}

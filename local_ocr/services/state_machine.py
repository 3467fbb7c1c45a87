"""
Машина состояний задачи распознавания.

Чистые переходы: transition(состояние, событие) -> (новое состояние, эффекты).
Никакого ввода-вывода: эффекты выполняет оркестратор.

Фазы:
    Idle -> Preprocessing -> Recognizing -> Done | Error | Cancelled

События, привязанные к задаче, несут job_id. Событие чужой
(заменённой или отменённой) задачи игнорируется.
"""

from dataclasses import dataclass, replace
from typing import Optional, Union

from local_ocr.schemas import ClassifiedError, EngineStage, JobSnapshot, Phase
from local_ocr.services.errors import cancelled_error

# Диапазоны общего процента для под-этапов движка: (начало, конец)
STAGE_BANDS: dict[str, tuple[int, int]] = {
    EngineStage.LOADING_CORE.value: (0, 5),
    EngineStage.INITIALIZING.value: (5, 10),
    EngineStage.LOADING_LANGUAGE.value: (10, 40),
    EngineStage.INITIALIZED.value: (40, 40),
    EngineStage.RECOGNIZING.value: (40, 99),
}

# Пока задача не завершена, 100% не показываем
MAX_RUNNING_PROGRESS = 99


# =============================================================================
# События
# =============================================================================


@dataclass(frozen=True)
class Submit:
    job_id: int
    language: str
    file_name: str
    # Для замены идущей задачи: останавливать ли движок
    release_engine: bool = True


@dataclass(frozen=True)
class Reject:
    error: ClassifiedError
    file_name: Optional[str] = None
    release_engine: bool = True


@dataclass(frozen=True)
class PreprocessDone:
    job_id: int
    payload_info: dict


@dataclass(frozen=True)
class EngineProgress:
    job_id: int
    stage: str
    fraction: Optional[float] = None


@dataclass(frozen=True)
class RecognitionDone:
    job_id: int
    text: str


@dataclass(frozen=True)
class RecognitionFailed:
    job_id: int
    error: ClassifiedError


@dataclass(frozen=True)
class Cancel:
    release_engine: bool = True


@dataclass(frozen=True)
class Reset:
    pass


Event = Union[
    Submit, Reject, PreprocessDone, EngineProgress, RecognitionDone, RecognitionFailed, Cancel, Reset
]


# =============================================================================
# Эффекты
# =============================================================================


@dataclass(frozen=True)
class StartPreprocess:
    job_id: int


@dataclass(frozen=True)
class StartRecognition:
    job_id: int


@dataclass(frozen=True)
class CancelPending:
    job_id: int


@dataclass(frozen=True)
class ReleaseEngine:
    pass


Effect = Union[StartPreprocess, StartRecognition, CancelPending, ReleaseEngine]


# =============================================================================
# Переходы
# =============================================================================


def map_progress(current: int, stage: str, fraction: Optional[float]) -> int:
    """
    Переводит долю под-этапа движка в общий процент.

    - Каждый под-этап занимает свой диапазон (STAGE_BANDS)
    - Как только прогресс сообщён, процент не меньше 1
    - Процент не убывает в пределах задачи
    - До завершения не больше 99

    Args:
        current: текущий процент
        stage: метка под-этапа
        fraction: доля 0..1 или None

    Returns:
        int: новый процент
    """
    band = STAGE_BANDS.get(stage)
    if fraction is None or band is None:
        return current

    fraction = min(1.0, max(0.0, float(fraction)))
    low, high = band
    percent = round(low + fraction * (high - low))
    percent = max(1, min(MAX_RUNNING_PROGRESS, percent))
    return max(current, percent)


def _stale(state: JobSnapshot, job_id: int) -> bool:
    return job_id != state.job_id or not state.status.is_running


def transition(state: JobSnapshot, event: Event) -> tuple[JobSnapshot, tuple[Effect, ...]]:
    """
    Применяет событие к состоянию.

    Args:
        state: текущее состояние
        event: событие

    Returns:
        tuple: (новое состояние, эффекты для оркестратора)
    """
    if isinstance(event, Submit):
        effects: tuple[Effect, ...] = ()
        if state.status.is_running:
            # Замена идущей задачи: семантика cancel + submit
            effects += (CancelPending(state.job_id),)
            if event.release_engine:
                effects += (ReleaseEngine(),)
        new_state = JobSnapshot(
            job_id=event.job_id,
            status=Phase.PREPROCESSING,
            progress=0,
            language=event.language,
            file_name=event.file_name,
        )
        return new_state, effects + (StartPreprocess(event.job_id),)

    if isinstance(event, Reject):
        effects = ()
        if state.status.is_running:
            effects += (CancelPending(state.job_id),)
            if event.release_engine:
                effects += (ReleaseEngine(),)
        return JobSnapshot(status=Phase.ERROR, error=event.error, file_name=event.file_name), effects

    if isinstance(event, PreprocessDone):
        if _stale(state, event.job_id) or state.status != Phase.PREPROCESSING:
            return state, ()
        new_state = replace(state, status=Phase.RECOGNIZING, payload_info=dict(event.payload_info))
        return new_state, (StartRecognition(event.job_id),)

    if isinstance(event, EngineProgress):
        if _stale(state, event.job_id) or state.status != Phase.RECOGNIZING:
            return state, ()
        progress = map_progress(state.progress, event.stage, event.fraction)
        return replace(state, stage=event.stage, progress=progress), ()

    if isinstance(event, RecognitionDone):
        if _stale(state, event.job_id):
            return state, ()
        return replace(state, status=Phase.DONE, progress=100, result=event.text, error=None), ()

    if isinstance(event, RecognitionFailed):
        # Cancelled побеждает поздние ошибки
        if _stale(state, event.job_id):
            return state, ()
        new_state = replace(state, status=Phase.ERROR, result=None, error=event.error)
        return new_state, (ReleaseEngine(),)

    if isinstance(event, Cancel):
        if not state.status.is_running:
            return state, ()
        new_state = replace(state, status=Phase.CANCELLED, result=None, error=cancelled_error())
        effects = (CancelPending(state.job_id),)
        if event.release_engine:
            effects += (ReleaseEngine(),)
        return new_state, effects

    if isinstance(event, Reset):
        if state.status.is_running:
            return state, ()
        return JobSnapshot(), ()

    raise TypeError(f"Неизвестное событие: {event!r}")

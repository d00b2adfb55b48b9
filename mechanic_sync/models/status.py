"""
Канонические статусы заявки.

За время жизни проекта словарь статусов менялся несколько раз
(Submitted/In Review, OPEN/WORKING, open/in_progress...), поэтому любой
сохраненный токен приводится к одному из пяти канонических значений здесь
и только здесь.
"""

from enum import Enum


class CanonicalStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


_TOKENS: dict[str, CanonicalStatus] = {
    "OPEN": CanonicalStatus.OPEN,
    "SUBMITTED": CanonicalStatus.OPEN,
    "IN_REVIEW": CanonicalStatus.OPEN,
    "ASSIGNED": CanonicalStatus.ASSIGNED,
    "ACCEPTED": CanonicalStatus.ASSIGNED,
    "EN_ROUTE": CanonicalStatus.IN_PROGRESS,
    "WORKING": CanonicalStatus.IN_PROGRESS,
    "IN_PROGRESS": CanonicalStatus.IN_PROGRESS,
    "COMPLETED": CanonicalStatus.COMPLETED,
    "CLOSED": CanonicalStatus.COMPLETED,
    "CANCELLED": CanonicalStatus.CANCELLED,
    "CANCELED": CanonicalStatus.CANCELLED,
}

_LABELS = {
    CanonicalStatus.OPEN: "Open",
    CanonicalStatus.ASSIGNED: "Assigned",
    CanonicalStatus.IN_PROGRESS: "In Progress",
    CanonicalStatus.COMPLETED: "Completed",
    CanonicalStatus.CANCELLED: "Cancelled",
}

_STYLE_CLASSES = {
    CanonicalStatus.OPEN: "badge badge-blue",
    CanonicalStatus.ASSIGNED: "badge badge-blue",
    CanonicalStatus.IN_PROGRESS: "badge badge-amber",
    CanonicalStatus.COMPLETED: "badge badge-green",
    CanonicalStatus.CANCELLED: "badge",
}

TERMINAL_STATUSES = frozenset({CanonicalStatus.COMPLETED, CanonicalStatus.CANCELLED})


def canonicalize(raw: object) -> CanonicalStatus:
    """
    Приводит любой токен статуса (из БД, UI, legacy) к каноническому значению.

    Функция тотальная: регистр и пробелы не важны, пробел и подчеркивание
    взаимозаменяемы, неизвестное или пустое значение дает OPEN.
    """
    if isinstance(raw, CanonicalStatus):
        return raw
    if raw is None:
        return CanonicalStatus.OPEN
    token = "_".join(str(raw).replace("_", " ").split()).upper()
    return _TOKENS.get(token, CanonicalStatus.OPEN)


def label(status: object) -> str:
    """Человекочитаемая подпись статуса."""
    return _LABELS[canonicalize(status)]


def style_class(status: object) -> str:
    """Подсказка для отображения (CSS-класс бейджа)."""
    return _STYLE_CLASSES[canonicalize(status)]


def is_open(status: object) -> bool:
    return canonicalize(status) is CanonicalStatus.OPEN


def is_terminal(status: object) -> bool:
    return canonicalize(status) in TERMINAL_STATUSES


def stored_spellings(status: CanonicalStatus) -> list[str]:
    """
    Известные варианты написания статуса в хранилище.

    Используется в условиях атомарных обновлений: строка с legacy-токеном
    'Accepted' должна проходить проверку "status = ASSIGNED" так же,
    как и строка с 'assigned'.
    """
    spellings: list[str] = []
    for token, canonical in _TOKENS.items():
        if canonical is not status:
            continue
        words = token.split("_")
        for variant in (
            token.lower(),
            token,
            " ".join(w.capitalize() for w in words),
            " ".join(words),
            " ".join(words).lower(),
        ):
            if variant not in spellings:
                spellings.append(variant)
    return spellings

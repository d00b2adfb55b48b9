"""
Контракт хранилища и классификация его ошибок.

Портал работает с любым реляционным хранилищем, которое умеет построчный CRUD
с фильтрами и атомарное условное обновление (UPDATE ... WHERE <guard> RETURNING *).
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Protocol

from mechanic_sync.core.errors import ERRORS_BY_KIND, ErrorKind, PortalError

Op = Literal["eq", "is_null", "in", "not_in", "or"]


@dataclass(frozen=True)
class Condition:
    """
    Предикат фильтра: column <op> value.

    Для op="or" value - кортеж вложенных условий, column не используется.
    Сравнения следуют SQL: NULL не проходит ни eq, ни in, ни not_in.
    """

    column: str
    op: Op
    value: Any = None

    @property
    def columns(self) -> list[str]:
        if self.op == "or":
            return [column for inner in self.value for column in inner.columns]
        return [self.column]

    def matches(self, row: dict) -> bool:
        if self.op == "or":
            return any(inner.matches(row) for inner in self.value)
        current = row.get(self.column)
        if self.op == "is_null":
            return current is None
        if current is None:
            return False
        if self.op == "in":
            return current in self.value
        if self.op == "not_in":
            return current not in self.value
        return str(current) == str(self.value)


def eq(column: str, value: Any) -> Condition:
    return Condition(column, "eq", value)


def is_null(column: str) -> Condition:
    return Condition(column, "is_null")


def in_(column: str, values: list) -> Condition:
    return Condition(column, "in", tuple(values))


def not_in(column: str, values: list) -> Condition:
    return Condition(column, "not_in", tuple(values))


def any_of(*conditions: Condition) -> Condition:
    return Condition("", "or", tuple(conditions))


@dataclass(frozen=True)
class Embed:
    """Вложенная строка связанной таблицы: row[alias] = table.id == row[foreign_key]."""

    alias: str
    table: str
    foreign_key: str


@dataclass
class RowChange:
    """Уведомление бэкенда об изменении строки."""

    table: str
    action: str
    new: dict = field(default_factory=dict)
    old: dict = field(default_factory=dict)


class StorageError(Exception):
    """
    Ошибка, сообщенная хранилищем, в "сыром" виде.

    Атрибуты:
        code (str | None): Код ошибки бэкенда (SQLSTATE, PGRST..., timeout).
        message (str): Текст ошибки.
        status (int | None): HTTP-статус, если есть.
    """

    def __init__(
        self, message: str, code: str | None = None, status: int | None = None
    ) -> None:
        self.message = message
        self.code = code
        self.status = status
        super().__init__(message)


class ChangeFeedUnavailable(Exception):
    """Бэкенд не поддерживает ленту изменений строк."""


class Backend(Protocol):
    async def select(
        self,
        table: str,
        conditions: list[Condition] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        embed: Embed | None = None,
    ) -> list[dict]: ...

    async def insert(self, table: str, values: dict) -> dict: ...

    async def update(
        self, table: str, values: dict, conditions: list[Condition]
    ) -> list[dict]: ...

    def subscribe_changes(
        self, table: str, callback: Callable[[RowChange], None]
    ) -> Callable[[], None]: ...


# --- Классификация ошибок ---
#
# Бэкенд не во всех развертываниях отдает структурированный код "нет колонки",
# поэтому классификация частично опирается на текст сообщения. Это известная
# хрупкость: все сопоставления строк собраны только здесь.

_SCHEMA_CODES = {"42703", "42P01", "PGRST204", "PGRST205", "PGRST200"}
_PERMISSION_CODES = {"42501"}
_TIMEOUT_CODES = {"timeout", "57014"}

_SCHEMA_PATTERNS = re.compile(
    r"column .* does not exist"
    r"|relation .* does not exist"
    r"|could not find the .* column"
    r"|could not find the table"
    r"|schema cache"
    r"|no such column"
    r"|no such table",
    re.IGNORECASE,
)
_PERMISSION_PATTERNS = re.compile(
    r"row[- ]level security|permission denied|not authorized", re.IGNORECASE
)
_TIMEOUT_PATTERNS = re.compile(r"timed? ?out|statement timeout", re.IGNORECASE)


def classify_storage_error(err: BaseException) -> ErrorKind:
    """
    Определяет вид ошибки хранилища.

    Возвращает SCHEMA_MISMATCH для отсутствующей колонки/таблицы или промаха
    кэша схемы, PERMISSION_DENIED для политик доступа, TIMEOUT для таймаутов,
    иначе UNKNOWN.
    """
    if isinstance(err, PortalError):
        return err.kind
    if isinstance(err, TimeoutError):
        return ErrorKind.TIMEOUT
    if not isinstance(err, StorageError):
        return ErrorKind.UNKNOWN

    code = (err.code or "").strip()
    if code in _SCHEMA_CODES:
        return ErrorKind.SCHEMA_MISMATCH
    if code in _PERMISSION_CODES or err.status in (401, 403):
        return ErrorKind.PERMISSION_DENIED
    if code in _TIMEOUT_CODES:
        return ErrorKind.TIMEOUT

    message = err.message or ""
    if _SCHEMA_PATTERNS.search(message):
        return ErrorKind.SCHEMA_MISMATCH
    if _PERMISSION_PATTERNS.search(message):
        return ErrorKind.PERMISSION_DENIED
    if _TIMEOUT_PATTERNS.search(message):
        return ErrorKind.TIMEOUT
    return ErrorKind.UNKNOWN


def to_portal_error(err: BaseException, fallback_message: str) -> PortalError:
    """Оборачивает ошибку хранилища в типизированную ошибку портала."""
    if isinstance(err, PortalError):
        return err
    kind = classify_storage_error(err)
    error_cls = ERRORS_BY_KIND[kind]
    if kind in (ErrorKind.UNKNOWN, ErrorKind.SCHEMA_MISMATCH):
        detail = getattr(err, "message", None) or str(err)
        return error_cls(f"{fallback_message} ({detail})" if detail else fallback_message)
    return error_cls()


_MISSING_COLUMN_PATTERNS = (
    re.compile(r'column\s+"?(?:\w+\.)?(\w+)"?(?:\s+of relation\s+"?\w+"?)?\s+does not exist', re.IGNORECASE),
    re.compile(r"could not find the '(\w+)' column", re.IGNORECASE),
    re.compile(r'no such column:?\s*"?(?:\w+\.)?(\w+)', re.IGNORECASE),
)


def missing_column(err: BaseException) -> str | None:
    """Имя отсутствующей колонки из ошибки хранилища, если бэкенд его назвал."""
    message = getattr(err, "message", None) or str(err)
    for pattern in _MISSING_COLUMN_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1)
    return None

"""
Варианты схемы таблицы заявок и повтор операции на legacy-схеме.

Схема бэкенда не контролируется клиентом и отличается между развертываниями.
Операция сначала выполняется на предпочтительной схеме; если бэкенд сообщил,
что нет необязательной колонки (отметки времени, location), операция
повторяется на том же варианте без нее. Если нет любой другой колонки или
таблицы, операция повторяется на legacy-схеме. Остальные ошибки
пробрасываются сразу.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, TypeVar

from mechanic_sync.core.errors import ErrorKind, UnknownFailure
from mechanic_sync.models.request import Contact, Location, Vehicle
from mechanic_sync.models.status import CanonicalStatus
from mechanic_sync.services.storage import (
    classify_storage_error,
    missing_column,
    to_portal_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OPTIONAL_FIELDS = (
    "assigned_at_column",
    "completed_at_column",
    "updated_at_column",
    "location_column",
)


@dataclass(frozen=True)
class SchemaVariant:
    name: str
    assignee_column: str
    assignee_email_column: str
    assigned_at_column: str | None
    completed_at_column: str | None
    updated_at_column: str | None
    location_column: str | None = "location"
    status_tokens: dict[CanonicalStatus, str] = field(default_factory=dict)
    nested_columns: bool = True

    def token(self, status: CanonicalStatus) -> str:
        return self.status_tokens.get(status, status.value)

    @staticmethod
    def stamp(values: dict, column: str | None, now: str) -> dict:
        if column:
            values[column] = now
        return values

    def touch(self, values: dict, now: str) -> dict:
        """Добавляет отметку времени изменения, если схема ее хранит."""
        return self.stamp(values, self.updated_at_column, now)

    @property
    def optional_columns(self) -> frozenset[str]:
        """Колонки, без которых запись допустима: их можно не писать."""
        return frozenset(
            column for column in (getattr(self, name) for name in _OPTIONAL_FIELDS) if column
        )

    def without(self, column: str) -> "SchemaVariant":
        """Тот же вариант, но без необязательной колонки, которой нет в развертывании."""
        changes = {name: None for name in _OPTIONAL_FIELDS if getattr(self, name) == column}
        return replace(self, **changes)

    def request_values(
        self,
        vehicle: Vehicle,
        contact: Contact,
        location: Location | None,
    ) -> dict:
        """Колонки vehicle/contact/location в форме этого варианта."""
        if self.nested_columns:
            values = {
                "vehicle": vehicle.model_dump(),
                "contact": contact.model_dump(),
            }
            if location is not None and self.location_column:
                values[self.location_column] = location.model_dump()
            return values

        values = {
            "vehicle_make": vehicle.make,
            "vehicle_model": vehicle.model,
            "vehicle_year": vehicle.year,
            "vehicle_plate": vehicle.plate,
            "contact_name": contact.name,
            "contact_phone": contact.phone,
            "contact_email": contact.email,
        }
        if location is not None:
            values.update(
                address=location.address,
                latitude=location.latitude,
                longitude=location.longitude,
            )
        return values


PREFERRED = SchemaVariant(
    name="preferred",
    assignee_column="assigned_mechanic_id",
    assignee_email_column="assigned_mechanic_email",
    assigned_at_column="assigned_at",
    completed_at_column="completed_at",
    updated_at_column="updated_at",
)

LEGACY = SchemaVariant(
    name="legacy",
    assignee_column="mechanic_id",
    assignee_email_column="mechanic_email",
    assigned_at_column="accepted_at",
    completed_at_column="completed_at",
    updated_at_column=None,
    location_column=None,
    status_tokens={
        CanonicalStatus.OPEN: "Submitted",
        CanonicalStatus.ASSIGNED: "Accepted",
        CanonicalStatus.IN_PROGRESS: "Working",
        CanonicalStatus.COMPLETED: "Completed",
        CanonicalStatus.CANCELLED: "Cancelled",
    },
    nested_columns=False,
)

VARIANTS = (PREFERRED, LEGACY)


async def run_with_fallback(
    operation: str,
    attempt: Callable[[SchemaVariant], Awaitable[T]],
    failure_message: str,
    variants: tuple[SchemaVariant, ...] = VARIANTS,
) -> T:
    """
    Выполняет attempt на каждом варианте схемы по очереди.

    При SCHEMA_MISMATCH из-за необязательной колонки вариант повторяется без
    нее, при любом другом SCHEMA_MISMATCH - берется следующий вариант.
    Остальные ошибки превращаются в PortalError и пробрасываются немедленно.
    """
    last_error: BaseException | None = None
    for variant in variants:
        while True:
            try:
                return await attempt(variant)
            except Exception as e:
                if classify_storage_error(e) is not ErrorKind.SCHEMA_MISMATCH:
                    raise to_portal_error(e, failure_message) from e
                column = missing_column(e)
                if column in variant.optional_columns:
                    logger.warning(
                        f"{operation}: backend has no '{column}' column; "
                        f"retrying '{variant.name}' schema without it."
                    )
                    variant = variant.without(column)
                    continue
                logger.warning(
                    f"{operation}: '{variant.name}' schema rejected by backend ({e}); trying next variant."
                )
                last_error = e
                break

    logger.error(f"{operation}: no schema variant is compatible with this backend.")
    raise UnknownFailure(failure_message) from last_error

"""
Модели данных, связанные с заявкой на ремонт.

Это каноническое представление: все варианты хранения (вложенные объекты,
плоские колонки, legacy-имена) приводятся к нему в normalizer.py.
"""

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from mechanic_sync.models.status import CanonicalStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Vehicle(BaseModel):
    make: str = ""
    model: str = ""
    year: str = ""
    plate: str = ""


class Contact(BaseModel):
    name: str = ""
    phone: str = ""
    email: str = ""


class Location(BaseModel):
    address: str = ""
    latitude: float | None = None
    longitude: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Note(BaseModel):
    """
    Запись журнала заявки. После записи не изменяется.

    Атрибуты:
        id (str): Идентификатор записи.
        at (datetime | None): Время создания.
        author (str): Роль или email автора.
        text (str): Текст записи.
    """

    id: str = Field(default_factory=lambda: f"n_{uuid.uuid4().hex}")
    at: datetime | None = Field(default_factory=utc_now)
    author: str = ""
    text: str = ""

    def to_record(self) -> dict:
        """Представление для встроенного списка notes в строке заявки."""
        return {
            "id": self.id,
            "at": self.at.isoformat() if self.at else None,
            "by": self.author,
            "text": self.text,
        }


class Request(BaseModel):
    """
    Модель заявки на выезд механика.
    """

    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    requester_id: str = ""
    requester_email: str = ""
    vehicle: Vehicle = Field(default_factory=Vehicle)
    issue_description: str = ""
    contact: Contact = Field(default_factory=Contact)
    location: Location = Field(default_factory=Location)

    status: CanonicalStatus = CanonicalStatus.OPEN
    # Исходный токен из хранилища, как он был записан
    raw_status: str = ""

    assigned_mechanic_id: str | None = None
    assigned_mechanic_email: str | None = None
    assigned_at: datetime | None = None
    completed_at: datetime | None = None

    notes: list[Note] = Field(default_factory=list)

    @property
    def is_assigned(self) -> bool:
        return self.assigned_mechanic_id is not None

    def is_held_by(self, mechanic_id: str) -> bool:
        return self.assigned_mechanic_id is not None and str(
            self.assigned_mechanic_id
        ) == str(mechanic_id)

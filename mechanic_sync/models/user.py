"""
Модели данных, связанные с пользователем портала.
"""

from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["user", "mechanic", "admin"]
Approval = Literal["pending", "approved", "rejected"]


class Actor(BaseModel):
    """
    Аутентифицированный пользователь вместе с его профилем.

    Атрибуты:
        id (str): Идентификатор пользователя в сервисе аутентификации.
        email (str): Email пользователя.
        role (str): Роль (user, mechanic, admin).
        approval (str): Статус одобрения механика (pending, approved, rejected).
        display_name (str): Отображаемое имя.
        service_area (str): Район обслуживания механика.
    """

    id: str = Field(..., description="Auth user id")
    email: str = ""
    role: Role = "user"
    approval: Approval = "approved"
    display_name: str = ""
    service_area: str = ""
    phone: str = ""

    @property
    def is_approved(self) -> bool:
        return self.approval == "approved"

    @property
    def signature(self) -> str:
        """Подпись автора в журнале заявки."""
        return self.email or self.display_name or self.id

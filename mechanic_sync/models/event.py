"""
Событие об изменении данных, распространяемое через шину изменений.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from mechanic_sync.models.request import Request, utc_now

Topic = Literal["requests", "profiles"]
Source = Literal["local", "remote"]


class ChangeEvent(BaseModel):
    """
    Атрибуты:
        topic (str): requests или profiles.
        action (str): claimed, started, completed, cancelled, created, updated,
            а для удаленных изменений - тип операции бэкенда (insert, update...).
        record_id (str | None): Идентификатор измененной строки.
        source (str): local - изменение этой сессии, remote - из ленты бэкенда.
        request (Request | None): Каноническое состояние заявки, если известно.
    """

    topic: Topic = "requests"
    action: str
    record_id: str | None = None
    source: Source = "local"
    at: datetime = Field(default_factory=utc_now)
    request: Request | None = None

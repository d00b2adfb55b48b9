"""
Нормализация записей хранилища в канонические модели.

Развертывания бэкенда хранят одну и ту же заявку по-разному: vehicle/contact
как JSON-объект, как JSON-строку или как плоские колонки; заметки как массив,
строку с JSON, объект с произвольными ключами или не хранят вовсе; назначение
механика в assigned_mechanic_id или mechanic_id; при join строка приходит
обернутой в {"request": {...}}. Все варианты разрешаются здесь, дальше по коду
ходят только модели из mechanic_sync.models.

Функции модуля никогда не выбрасывают исключений: на несовпадение типов
отвечают приведением или значением по умолчанию.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from mechanic_sync.models.request import Contact, Location, Note, Request, Vehicle
from mechanic_sync.models.status import CanonicalStatus, canonicalize
from mechanic_sync.models.user import Actor

logger = logging.getLogger(__name__)

_MISSING = object()


# --- Примитивы приведения ---


def _parse_json(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        text = value.strip()
        if text[:1] in ("{", "["):
            try:
                return json.loads(text)
            except ValueError:
                return value
    return value


def _as_dict(value: Any) -> dict:
    value = _parse_json(value)
    return value if isinstance(value, dict) else {}


def _is_empty(value: Any) -> bool:
    return value is None or value is _MISSING or (isinstance(value, str) and not value.strip())


def _first(*candidates: Any) -> Any:
    """Первое непустое значение из списка кандидатов."""
    for candidate in candidates:
        if not _is_empty(candidate):
            return candidate
    return None


def _probe(sources: list[dict], keys: tuple[str, ...]) -> Any:
    """Перебирает источники и ключи по порядку, возвращает первое непустое значение."""
    for source in sources:
        for key in keys:
            value = source.get(key, _MISSING)
            if not _is_empty(value):
                return value
    return None


def _as_str(value: Any) -> str:
    if _is_empty(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _as_optional_str(value: Any) -> str | None:
    text = _as_str(value)
    return text or None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or _is_empty(value):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_datetime(value: Any) -> datetime | None:
    if _is_empty(value):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Эпоха в миллисекундах (Date.now()) или секундах
        seconds = value / 1000 if value > 10**11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# --- Составные части заявки ---


def unwrap_record(raw: Any) -> dict:
    """
    Снимает один уровень обертки и разбирает JSON-строку.

    Строка журнала назначений из join ({"id", "mechanic_id", "request": {...}})
    имеет собственный id, поэтому обертка определяется по ключу, а не по id.
    """
    record = _as_dict(raw)
    for key in ("request", "requests"):
        inner = _parse_json(record.get(key))
        if isinstance(inner, list) and inner:
            inner = inner[0]
        if isinstance(inner, dict) and inner:
            return inner
    return record


def normalize_vehicle(record: dict) -> Vehicle:
    nested = _as_dict(record.get("vehicle"))
    return Vehicle(
        make=_as_str(_first(nested.get("make"), record.get("vehicle_make"), record.get("make"))),
        model=_as_str(_first(nested.get("model"), record.get("vehicle_model"), record.get("model"))),
        year=_as_str(_first(nested.get("year"), record.get("vehicle_year"), record.get("year"))),
        plate=_as_str(
            _first(
                nested.get("plate"),
                nested.get("license_plate"),
                record.get("vehicle_plate"),
                record.get("plate"),
                record.get("license_plate"),
            )
        ),
    )


def normalize_contact(record: dict) -> Contact:
    nested = _as_dict(record.get("contact"))
    return Contact(
        name=_as_str(_first(nested.get("name"), record.get("contact_name"), record.get("customer_name"))),
        phone=_as_str(
            _first(nested.get("phone"), record.get("contact_phone"), record.get("phone"))
        ),
        email=_as_str(
            _first(nested.get("email"), record.get("contact_email"), record.get("email"))
        ),
    )


def normalize_location(record: dict) -> Location:
    raw_location = _parse_json(record.get("location"))
    nested = raw_location if isinstance(raw_location, dict) else {}
    sources = [nested, record]

    address = _probe(sources, ("address", "location_address"))
    if address is None and isinstance(raw_location, str):
        address = raw_location

    return Location(
        address=_as_str(address),
        latitude=_as_float(_probe(sources, ("latitude", "lat"))),
        longitude=_as_float(_probe(sources, ("longitude", "lng", "lon"))),
    )


def _normalize_note(item: Any, fallback_id: str | None = None) -> Note | None:
    item = _parse_json(item)
    if isinstance(item, str):
        return Note(id=fallback_id or Note().id, at=None, text=item.strip()) if item.strip() else None
    if not isinstance(item, dict):
        return None

    note_id = _as_str(_first(item.get("id"), item.get("note_id"), fallback_id))
    return Note(
        id=note_id or Note().id,
        at=_as_datetime(_first(item.get("at"), item.get("created_at"), item.get("timestamp"))),
        author=_as_str(
            _first(item.get("by"), item.get("author"), item.get("author_role"), item.get("created_by"))
        ),
        text=_as_str(_first(item.get("text"), item.get("body"), item.get("note"), item.get("message"))),
    )


def normalize_notes(raw: Any) -> list[Note]:
    """
    Приводит заметки к списку Note в порядке вставки.

    Поддерживает: список, JSON-строку (массив или объект), {"items": [...]},
    объект с заметками под произвольными ключами (ключ становится id).
    """
    raw = _parse_json(raw)
    items: list[tuple[str | None, Any]]
    if isinstance(raw, list):
        items = [(None, item) for item in raw]
    elif isinstance(raw, dict):
        nested = _parse_json(raw.get("items"))
        if isinstance(nested, list):
            items = [(None, item) for item in nested]
        elif any(k in raw for k in ("text", "body", "note")):
            items = [(None, raw)]
        else:
            items = [(str(key), value) for key, value in raw.items()]
    else:
        items = []

    notes = []
    for fallback_id, item in items:
        note = _normalize_note(item, fallback_id)
        if note is not None:
            notes.append(note)
    return notes


def _raw_status(record: dict) -> str:
    return _as_str(_first(record.get("status"), record.get("state"), record.get("request_status")))


def normalize_request(raw: Any) -> Request:
    """
    Превращает запись хранилища любой известной формы в каноническую заявку.

    Никогда не выбрасывает исключений. Запись без идентификатора возвращается
    с пустым id - отбрасывать ее должен вызывающий код.
    """
    try:
        record = unwrap_record(raw)
    except Exception as e:
        logger.warning(f"Unreadable request record, using an empty shape: {e}")
        record = {}

    raw_status = _raw_status(record)
    status = canonicalize(raw_status)

    assignee_id = _as_optional_str(
        _first(
            record.get("assigned_mechanic_id"),
            record.get("assignedMechanicId"),
            record.get("mechanic_id"),
            record.get("mechanicId"),
        )
    )
    assignee_email = _as_optional_str(
        _first(
            record.get("assigned_mechanic_email"),
            record.get("assignedMechanicEmail"),
            record.get("mechanic_email"),
        )
    )

    # OPEN всегда без исполнителя, ASSIGNED/IN_PROGRESS - всегда с ним
    if assignee_id and status is CanonicalStatus.OPEN:
        status = CanonicalStatus.ASSIGNED
    elif not assignee_id and status in (CanonicalStatus.ASSIGNED, CanonicalStatus.IN_PROGRESS):
        status = CanonicalStatus.OPEN

    return Request(
        id=_as_str(record.get("id")),
        created_at=_as_datetime(_first(record.get("created_at"), record.get("createdAt"))),
        updated_at=_as_datetime(_first(record.get("updated_at"), record.get("updatedAt"))),
        requester_id=_as_str(
            _first(record.get("user_id"), record.get("userId"), record.get("requester_id"))
        ),
        requester_email=_as_str(
            _first(record.get("user_email"), record.get("userEmail"), record.get("requester_email"))
        ),
        vehicle=normalize_vehicle(record),
        issue_description=_as_str(
            _first(
                record.get("issue_description"),
                record.get("issueDescription"),
                record.get("description"),
                record.get("issue"),
            )
        ),
        contact=normalize_contact(record),
        location=normalize_location(record),
        status=status,
        raw_status=raw_status,
        assigned_mechanic_id=assignee_id,
        assigned_mechanic_email=assignee_email,
        assigned_at=_as_datetime(
            _first(record.get("assigned_at"), record.get("accepted_at"), record.get("claimed_at"))
        ),
        completed_at=_as_datetime(_first(record.get("completed_at"), record.get("completedAt"))),
        notes=normalize_notes(record.get("notes")),
    )


# --- Профили ---

_APPROVAL_ALIASES = {
    "approved": "approved",
    "active": "approved",
    "pending": "pending",
    "pending_approval": "pending",
    "awaiting_approval": "pending",
    "rejected": "rejected",
    "declined": "rejected",
}


def normalize_profile(raw: Any, user_id: str = "", email: str = "") -> Actor:
    """
    Собирает Actor из строки профиля любой известной формы.

    Поддерживает булево approved, строковые approval_status/status,
    legacy-роль approved_mechanic и данные профиля как во вложенном объекте
    profile, так и в плоских колонках. Пустой профиль дает обычного
    пользователя (role=user).
    """
    record = _as_dict(raw)
    nested = _as_dict(record.get("profile"))
    sources = [record, nested]

    role = _as_str(record.get("role")).lower() or "user"
    approval: str | None = None
    if role == "approved_mechanic":
        role, approval = "mechanic", "approved"
    if role not in ("user", "mechanic", "admin"):
        role = "user"

    if approval is None:
        status_token = _as_str(_first(record.get("approval_status"), record.get("status"))).lower()
        approval = _APPROVAL_ALIASES.get(status_token.replace(" ", "_"))
    if approval is None and isinstance(record.get("approved"), bool):
        approval = "approved" if record["approved"] else "pending"
    if approval is None:
        # Без явного признака одобрения механик считается ожидающим
        approval = "pending" if role == "mechanic" else "approved"

    return Actor(
        id=_as_str(_first(record.get("id"), user_id)),
        email=_as_str(_first(record.get("email"), email)),
        role=role,
        approval=approval,
        display_name=_as_str(_probe(sources, ("display_name", "name", "full_name"))),
        service_area=_as_str(_probe(sources, ("service_area", "serviceArea", "service_type", "serviceType"))),
        phone=_as_str(_probe(sources, ("phone",))),
    )

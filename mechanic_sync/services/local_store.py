"""
Локальное хранилище для офлайн/демо-режима.

Используется, когда бэкенд не сконфигурирован. Данные лежат во встроенном
key-value хранилище (JSON-файл или память): демо-пользователи, демо-заявки
и указатель активной сессии. LocalBackend реализует тот же контракт, что и
онлайн-бэкенд, включая условные обновления и ленту изменений строк, а схема
таблиц задается явно, чтобы воспроизводить разные развертывания.
"""

import copy
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Callable

from mechanic_sync.models.request import utc_now
from mechanic_sync.services.storage import Condition, Embed, RowChange, StorageError

logger = logging.getLogger(__name__)

# None вместо набора колонок означает таблицу без фиксированной схемы
TableSchema = dict[str, frozenset[str] | None]

PREFERRED_SCHEMA: TableSchema = {
    "requests": frozenset(
        {
            "id",
            "created_at",
            "updated_at",
            "user_id",
            "user_email",
            "vehicle",
            "issue_description",
            "contact",
            "location",
            "status",
            "assigned_mechanic_id",
            "assigned_mechanic_email",
            "assigned_at",
            "completed_at",
            "notes",
        }
    ),
    "request_notes": frozenset({"id", "request_id", "created_at", "author", "text"}),
    "assignments": frozenset({"id", "mechanic_id", "request_id", "created_at"}),
    "profiles": frozenset({"id", "email", "role", "approved", "approval_status", "profile"}),
}

# Развертывание только с теми колонками, которые пишет сам портал:
# без отметок времени, location и таблицы заметок, но с журналом назначений
MINIMAL_SCHEMA: TableSchema = {
    "requests": frozenset(
        {
            "id",
            "created_at",
            "user_id",
            "user_email",
            "vehicle",
            "issue_description",
            "contact",
            "status",
            "assigned_mechanic_id",
            "assigned_mechanic_email",
            "notes",
        }
    ),
    "assignments": frozenset({"id", "mechanic_id", "request_id"}),
    "profiles": frozenset({"id", "email", "role", "approved", "profile"}),
}

# Старые развертывания: плоские колонки, mechanic_id, без таблицы заметок
LEGACY_SCHEMA: TableSchema = {
    "requests": frozenset(
        {
            "id",
            "created_at",
            "user_id",
            "user_email",
            "vehicle_make",
            "vehicle_model",
            "vehicle_year",
            "vehicle_plate",
            "issue_description",
            "contact_name",
            "contact_phone",
            "contact_email",
            "address",
            "latitude",
            "longitude",
            "status",
            "mechanic_id",
            "mechanic_email",
            "accepted_at",
            "completed_at",
            "notes",
        }
    ),
    "profiles": frozenset(
        {"id", "email", "role", "approval_status", "display_name", "service_area", "phone"}
    ),
}

DEMO_PASSWORD = "password123"


class KeyValueStore:
    """
    Простое key-value хранилище с JSON-сериализацией.

    Если задан path, каждое изменение сохраняется в файл, а при создании
    данные читаются из него.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else None
        self._data: dict[str, Any] = {}
        if self.path and self.path.exists():
            try:
                self._data = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Local store at {self.path} is unreadable, starting empty: {e}")
                self._data = {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        # Через JSON, чтобы в хранилище не попало ничего несериализуемого
        self._data[key] = json.loads(json.dumps(value, default=str))
        self._flush()

    def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._flush()

    def _flush(self) -> None:
        if not self.path:
            return
        self.path.write_text(
            json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8"
        )


class LocalBackend:
    """
    Реализация контракта хранилища поверх KeyValueStore.

    Проверка условия и запись в update() выполняются без точек приостановки,
    поэтому условное обновление атомарно в пределах процесса.
    """

    def __init__(
        self, store: KeyValueStore | None = None, schema: TableSchema | None = None
    ) -> None:
        self.store = store or KeyValueStore()
        self.schema = PREFERRED_SCHEMA if schema is None else schema
        self._listeners: dict[str, list[Callable[[RowChange], None]]] = {}

    # --- Проверка схемы ---

    def _check_table(self, table: str) -> None:
        if table not in self.schema:
            raise StorageError(f'relation "{table}" does not exist', code="42P01")

    def _check_columns(self, table: str, columns) -> None:
        allowed = self.schema[table]
        if allowed is None:
            return
        for column in columns:
            if column not in allowed:
                raise StorageError(
                    f"column {table}.{column} does not exist", code="42703"
                )

    def _rows(self, table: str) -> list[dict]:
        return self.store.get("tables", {}).get(table, [])

    def _save_rows(self, table: str, rows: list[dict]) -> None:
        tables = self.store.get("tables", {})
        tables[table] = rows
        self.store.set("tables", tables)

    # --- CRUD ---

    async def select(
        self,
        table: str,
        conditions: list[Condition] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        embed: Embed | None = None,
    ) -> list[dict]:
        conditions = conditions or []
        self._check_table(table)
        self._check_columns(table, [col for c in conditions for col in c.columns])
        if order_by:
            self._check_columns(table, [order_by])
        if embed:
            self._check_table(embed.table)
            self._check_columns(table, [embed.foreign_key])

        rows = [r for r in self._rows(table) if all(c.matches(r) for c in conditions)]
        if order_by:
            rows.sort(key=lambda r: str(r.get(order_by) or ""), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if embed:
            related = {str(r.get("id")): r for r in self._rows(embed.table)}
            for row in rows:
                row[embed.alias] = related.get(str(row.get(embed.foreign_key)))
        return rows

    async def insert(self, table: str, values: dict) -> dict:
        self._check_table(table)
        self._check_columns(table, values.keys())

        row = dict(values)
        row.setdefault("id", str(uuid.uuid4()))
        allowed = self.schema[table]
        if "created_at" not in row and (allowed is None or "created_at" in allowed):
            row["created_at"] = utc_now().isoformat()

        rows = self._rows(table)
        rows.append(row)
        self._save_rows(table, rows)
        stored = self.store.get("tables")[table][-1]
        self._notify(RowChange(table=table, action="insert", new=stored))
        return stored

    async def update(
        self, table: str, values: dict, conditions: list[Condition]
    ) -> list[dict]:
        self._check_table(table)
        self._check_columns(table, values.keys())
        self._check_columns(table, [col for c in conditions for col in c.columns])

        rows = self._rows(table)
        changes: list[RowChange] = []
        for index, row in enumerate(rows):
            if all(c.matches(row) for c in conditions):
                updated = {**row, **values}
                rows[index] = updated
                changes.append(RowChange(table=table, action="update", new=updated, old=row))
        if not changes:
            return []

        self._save_rows(table, rows)
        for change in changes:
            self._notify(change)
        return [copy.deepcopy(change.new) for change in changes]

    # --- Лента изменений ---

    def subscribe_changes(
        self, table: str, callback: Callable[[RowChange], None]
    ) -> Callable[[], None]:
        self._check_table(table)
        self._listeners.setdefault(table, []).append(callback)
        logger.debug(f"Local change feed subscribed for table '{table}'.")

        def unsubscribe() -> None:
            listeners = self._listeners.get(table, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def _notify(self, change: RowChange) -> None:
        for callback in list(self._listeners.get(change.table, [])):
            try:
                callback(copy.deepcopy(change))
            except Exception as e:
                logger.error(
                    f"Change listener failed for table '{change.table}': {e}",
                    exc_info=True,
                )

    # --- Демо-данные ---

    def ensure_seed_data(self) -> None:
        """Заполняет хранилище демо-пользователями и одной открытой заявкой."""
        if self.store.get("seeded", False):
            return

        requester_id = f"u_{uuid.uuid4().hex[:12]}"
        mechanic_id = f"m_{uuid.uuid4().hex[:12]}"
        admin_id = f"a_{uuid.uuid4().hex[:12]}"

        # Демо-режим: пароли хранятся как есть, как и в исходном демо-наборе
        users = [
            {"id": requester_id, "email": "user@example.com", "password": DEMO_PASSWORD},
            {"id": mechanic_id, "email": "mech@example.com", "password": DEMO_PASSWORD},
            {"id": admin_id, "email": "admin@example.com", "password": DEMO_PASSWORD},
        ]
        profiles = [
            {"id": requester_id, "email": "user@example.com", "role": "user", "approved": True, "approval_status": "approved"},
            {
                "id": mechanic_id,
                "email": "mech@example.com",
                "role": "mechanic",
                "approved": True,
                "approval_status": "approved",
                "display_name": "Alex Mechanic",
                "service_area": "Downtown",
                "profile": {"name": "Alex Mechanic", "serviceArea": "Downtown"},
            },
            {"id": admin_id, "email": "admin@example.com", "role": "admin", "approved": True, "approval_status": "approved"},
        ]
        requests = [
            {
                "id": f"req_{uuid.uuid4().hex[:12]}",
                "created_at": utc_now().isoformat(),
                "user_id": requester_id,
                "user_email": "user@example.com",
                "vehicle": {"make": "Toyota", "model": "Corolla", "year": "2016", "plate": "ABC-123"},
                "vehicle_make": "Toyota",
                "vehicle_model": "Corolla",
                "vehicle_year": "2016",
                "vehicle_plate": "ABC-123",
                "issue_description": "Car won't start, clicking noise.",
                "contact": {"name": "Sam Driver", "phone": "555-0101"},
                "contact_name": "Sam Driver",
                "contact_phone": "555-0101",
                "status": "Submitted",
                "notes": [],
            }
        ]

        tables = self.store.get("tables", {})
        for table, rows in (("profiles", profiles), ("requests", requests)):
            if table not in self.schema:
                continue
            allowed = self.schema[table]
            tables[table] = [
                {k: v for k, v in row.items() if allowed is None or k in allowed}
                for row in rows
            ]
        self.store.set("tables", tables)
        self.store.set("users", users)
        self.store.set("seeded", True)
        logger.info("Local store seeded with demo users and requests.")

"""
Журнал заявки (notes): только добавление, без перезаписи.

Предпочтительно заметки пишутся в отдельную таблицу. Если таблицы нет
(или ее нет в кэше схемы), заметка дописывается во встроенный список notes
строки заявки. Этот путь - read-modify-write и при гонке двух записей может
потерять одну из заметок; это принятое ограничение.
"""

import json
import logging
from typing import Any

from mechanic_sync.core.config import Settings, settings as default_settings
from mechanic_sync.core.errors import ErrorKind
from mechanic_sync.models.request import Note
from mechanic_sync.services.normalizer import normalize_notes
from mechanic_sync.services.storage import Backend, classify_storage_error, eq

logger = logging.getLogger(__name__)


def _appended(raw: Any, record: dict, note_id: str) -> Any:
    """Возвращает значение колонки notes с новой записью в конце, сохраняя форму хранения."""
    was_string = isinstance(raw, str)
    parsed = raw
    if was_string:
        try:
            parsed = json.loads(raw) if raw.strip() else []
        except ValueError:
            parsed = []

    if isinstance(parsed, list):
        result: Any = [*parsed, record]
    elif isinstance(parsed, dict) and isinstance(parsed.get("items"), list):
        result = {**parsed, "items": [*parsed["items"], record]}
    elif isinstance(parsed, dict) and parsed:
        result = {**parsed, note_id: record}
    else:
        result = [record]

    return json.dumps(result, ensure_ascii=False) if was_string else result


def merge_notes(embedded: list[Note], stored: list[Note]) -> list[Note]:
    """Объединяет встроенные заметки и заметки из таблицы в хронологическом порядке."""
    seen: set[str] = set()
    merged = []
    for note in [*embedded, *stored]:
        if note.id not in seen:
            seen.add(note.id)
            merged.append(note)
    if merged and all(note.at is not None for note in merged):
        # sorted() устойчив: заметки с одинаковым временем остаются в порядке вставки
        merged = sorted(merged, key=lambda note: note.at)
    return merged


class NotesManager:
    def __init__(self, backend: Backend, settings: Settings | None = None) -> None:
        self.backend = backend
        self.settings = settings or default_settings
        # None - еще не знаем, есть ли в развертывании таблица заметок
        self._table_available: bool | None = None

    async def append_note(
        self,
        request_id: str,
        author: str,
        text: str,
        snapshot: dict | None = None,
    ) -> Note | None:
        """
        Добавляет запись в журнал заявки. Вызывается только после успешного перехода.

        Никогда не выбрасывает исключений: ошибка записи журнала логируется
        и не должна отменять уже выполненный переход.

        Args:
            request_id: Идентификатор заявки.
            author: Роль или email автора.
            text: Текст заметки.
            snapshot: Самая свежая строка заявки (обычно RETURNING атомарного
                обновления), используется при записи во встроенный список.
        """
        note = Note(author=author, text=text)

        if self._table_available is not False:
            try:
                await self.backend.insert(
                    self.settings.notes_table,
                    {
                        "id": note.id,
                        "request_id": request_id,
                        "created_at": note.at.isoformat(),
                        "author": author,
                        "text": text,
                    },
                )
                self._table_available = True
                logger.info(f"Note {note.id} appended to request {request_id}.")
                return note
            except Exception as e:
                if classify_storage_error(e) is not ErrorKind.SCHEMA_MISMATCH:
                    logger.error(
                        f"Failed to append note to request {request_id}: {e}",
                        exc_info=True,
                    )
                    return None
                logger.warning(
                    f"Notes table unavailable ({e}); falling back to embedded notes."
                )
                self._table_available = False

        try:
            return await self._append_embedded(request_id, note, snapshot)
        except Exception as e:
            logger.error(
                f"Failed to append embedded note to request {request_id}: {e}",
                exc_info=True,
            )
            return None

    async def _append_embedded(
        self, request_id: str, note: Note, snapshot: dict | None
    ) -> Note | None:
        if snapshot is None:
            rows = await self.backend.select(
                self.settings.requests_table, [eq("id", request_id)], limit=1
            )
            if not rows:
                logger.warning(f"Request {request_id} vanished before its note was written.")
                return None
            snapshot = rows[0]

        notes_value = _appended(snapshot.get("notes"), note.to_record(), note.id)
        await self.backend.update(
            self.settings.requests_table, {"notes": notes_value}, [eq("id", request_id)]
        )
        logger.info(f"Embedded note {note.id} appended to request {request_id}.")
        return note

    async def list_notes(self, request_id: str) -> list[Note]:
        """Заметки из отдельной таблицы; пустой список, если таблицы нет."""
        if self._table_available is False:
            return []
        try:
            rows = await self.backend.select(
                self.settings.notes_table,
                [eq("request_id", request_id)],
                order_by="created_at",
            )
        except Exception as e:
            if classify_storage_error(e) is ErrorKind.SCHEMA_MISMATCH:
                self._table_available = False
            else:
                logger.warning(f"Could not load notes of request {request_id}: {e}")
            return []
        self._table_available = True
        return normalize_notes(rows)

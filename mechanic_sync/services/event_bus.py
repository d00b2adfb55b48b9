"""
Шина изменений: локальная рассылка событий и ретрансляция ленты изменений бэкенда.

Шина создается явно на время сессии и закрывается в ее конце, глобального
экземпляра нет.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable

from mechanic_sync.models.event import ChangeEvent
from mechanic_sync.services.normalizer import normalize_request
from mechanic_sync.services.storage import Backend, ChangeFeedUnavailable, RowChange

logger = logging.getLogger(__name__)

Handler = Callable[[ChangeEvent], Any]


class ChangeBus:
    """
    Publish/subscribe в пределах одной сессии.

    publish() не выполняет обработчики сам, а планирует их в цикле событий
    в порядке публикации. Ошибка обработчика логируется и не мешает остальным.
    """

    def __init__(self) -> None:
        self._handlers: list[Handler] = []
        self._remote: dict[str, Callable[[], None]] = {}
        self._unavailable: set[str] = set()
        self._pending: set[asyncio.Future] = set()
        self._closed = False

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Регистрирует обработчик и возвращает функцию отписки."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        if self._closed:
            logger.debug(f"Bus is closed, dropping event '{event.action}'.")
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for handler in list(self._handlers):
            if loop is None:
                # Вне цикла событий планировать некуда, выполняем сразу
                result = self._run_sync(handler, event)
                if inspect.iscoroutine(result):
                    result.close()
                    logger.warning(
                        f"Async handler {handler!r} skipped: no running event loop."
                    )
            else:
                loop.call_soon(self._dispatch, loop, handler, event)

    def _dispatch(self, loop: asyncio.AbstractEventLoop, handler: Handler, event: ChangeEvent) -> None:
        result = self._run_sync(handler, event)
        if inspect.isawaitable(result):
            task = loop.create_task(self._await_result(handler, result))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    @staticmethod
    def _run_sync(handler: Handler, event: ChangeEvent) -> Any:
        try:
            return handler(event)
        except Exception as e:
            logger.error(f"Change handler {handler!r} failed: {e}", exc_info=True)
            return None

    @staticmethod
    async def _await_result(handler: Handler, result: Any) -> None:
        try:
            await result
        except Exception as e:
            logger.error(f"Change handler {handler!r} failed: {e}", exc_info=True)

    async def drain(self) -> None:
        """Ждет выполнения всех запланированных обработчиков."""
        # Пара итераций цикла, чтобы call_soon успели создать задачи
        for _ in range(2):
            await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
            await asyncio.sleep(0)

    # --- Ретрансляция изменений бэкенда ---

    def connect_remote(self, backend: Backend, table: str, topic: str = "requests") -> bool:
        """
        Подписывается на ленту изменений таблицы (не более одного раза на таблицу).

        Если бэкенд ленту не поддерживает, шина молча остается без push-обновлений.
        Возвращает True, если подписка активна.
        """
        if table in self._remote:
            return True
        if table in self._unavailable:
            return False

        def on_change(change: RowChange) -> None:
            row = change.new or change.old
            event = ChangeEvent(
                topic=topic,
                action=change.action,
                record_id=str(row.get("id")) if row.get("id") is not None else None,
                source="remote",
                request=normalize_request(row) if topic == "requests" and row else None,
            )
            self.publish(event)

        try:
            self._remote[table] = backend.subscribe_changes(table, on_change)
        except ChangeFeedUnavailable:
            logger.info(f"Backend has no change feed for '{table}'; push updates disabled.")
            self._unavailable.add(table)
            return False
        except Exception as e:
            logger.warning(f"Could not subscribe to changes of '{table}': {e}")
            self._unavailable.add(table)
            return False

        logger.info(f"Subscribed to remote changes of '{table}'.")
        return True

    @property
    def remote_tables(self) -> list[str]:
        return list(self._remote)

    def close(self) -> None:
        """Отписывается от бэкенда и удаляет обработчиков. Повторный вызов безопасен."""
        for table, unsubscribe in self._remote.items():
            try:
                unsubscribe()
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from '{table}': {e}")
        self._remote.clear()
        self._handlers.clear()
        self._closed = True

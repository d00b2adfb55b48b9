"""
Сервисный модуль для работы с онлайн-бэкендом через REST (PostgREST-совместимый API).

Реализует механизм повторных попыток (retry) для сетевых сбоев и ответов 5xx
и ограничивает каждый вызов таймаутом. Условное обновление выполняется одним
PATCH-запросом с фильтрами и Prefer: return=representation, то есть
UPDATE ... WHERE <guard> RETURNING * на стороне базы.
"""

import asyncio
import logging
from typing import Any, Callable

import requests
import requests.exceptions
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mechanic_sync.core.config import Settings, settings as default_settings
from mechanic_sync.services.storage import (
    ChangeFeedUnavailable,
    Condition,
    Embed,
    RowChange,
    StorageError,
)

logger = logging.getLogger(__name__)


def is_retryable_backend_error(exception: BaseException) -> bool:
    return (
        isinstance(exception, StorageError)
        and exception.status is not None
        and exception.status >= 500
    )


backend_retry = retry(
    retry=(
        retry_if_exception_type(requests.exceptions.ConnectionError)
        | retry_if_exception(is_retryable_backend_error)
    ),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    stop=stop_after_attempt(3),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def storage_error_from_response(response: requests.Response) -> StorageError:
    """Собирает StorageError из тела ответа об ошибке (code/message/details/hint)."""
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    message = (
        payload.get("message")
        or payload.get("msg")
        or payload.get("error_description")
        or payload.get("error")
        or response.text
        or f"HTTP {response.status_code}"
    )
    details = payload.get("details") or payload.get("hint")
    if details:
        message = f"{message} ({details})"
    code = payload.get("code") or payload.get("error_code")
    return StorageError(str(message), code=str(code) if code else None, status=response.status_code)


def send_request(
    session: requests.Session,
    method: str,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> requests.Response:
    """Выполняет HTTP-запрос; таймаут превращается в StorageError(code='timeout')."""
    try:
        return session.request(method, url, timeout=timeout, **kwargs)
    except requests.exceptions.Timeout as e:
        # ConnectTimeout одновременно и ConnectionError - его стоит повторить
        if isinstance(e, requests.exceptions.ConnectionError):
            raise
        logger.warning(f"{method} {url} timed out after {timeout}s.")
        raise StorageError(f"Request timed out after {timeout}s", code="timeout") from e


def _quote(value: Any) -> str:
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def encode_condition(condition: Condition) -> tuple[str, str]:
    """Condition -> параметр фильтра PostgREST."""
    if condition.op == "or":
        inner = (".".join(encode_condition(c)) for c in condition.value)
        return "or", "(" + ",".join(inner) + ")"
    if condition.op == "is_null":
        return condition.column, "is.null"
    if condition.op in ("in", "not_in"):
        values = "(" + ",".join(_quote(v) for v in condition.value) + ")"
        prefix = "not.in." if condition.op == "not_in" else "in."
        return condition.column, prefix + values
    return condition.column, f"eq.{condition.value}"


class PostgrestBackend:
    """
    Реализация контракта хранилища поверх REST API бэкенда.

    token_provider возвращает access-токен текущей сессии (для политик
    row-level security); без него запросы идут с публичным ключом.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        token_provider: Callable[[], str | None] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = settings or default_settings
        if not self.settings.online:
            raise ValueError("PostgrestBackend requires BACKEND_URL and BACKEND_KEY.")
        self.base_url = self.settings.backend_url.rstrip("/") + "/rest/v1"
        self.token_provider = token_provider
        self.session = session or requests.Session()
        logger.info(f"REST backend client initialized for {self.settings.backend_url}.")

    def _headers(self, prefer: str | None = None) -> dict:
        token = (self.token_provider() if self.token_provider else None) or self.settings.backend_key
        headers = {
            "apikey": self.settings.backend_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @backend_retry
    def _call(
        self,
        method: str,
        table: str,
        timeout: float,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        response = send_request(
            self.session,
            method,
            f"{self.base_url}/{table}",
            timeout,
            params=params,
            json=json,
            headers=self._headers(prefer),
        )
        if response.status_code >= 400:
            error = storage_error_from_response(response)
            logger.warning(f"{method} {table} failed: [{error.code}] {error.message}")
            raise error
        if not response.content:
            return []
        return response.json()

    async def _run(self, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(self._call, *args, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"Backend request failed: {e}", exc_info=True)
            raise StorageError(str(e), code="network") from e

    async def select(
        self,
        table: str,
        conditions: list[Condition] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        embed: Embed | None = None,
    ) -> list[dict]:
        columns = f"*,{embed.alias}:{embed.table}(*)" if embed else "*"
        params = [("select", columns)]
        params.extend(encode_condition(c) for c in conditions or [])
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        rows = await self._run("GET", table, self.settings.read_timeout_seconds, params=params)
        return rows if isinstance(rows, list) else []

    async def insert(self, table: str, values: dict) -> dict:
        rows = await self._run(
            "POST",
            table,
            self.settings.write_timeout_seconds,
            json=values,
            prefer="return=representation",
        )
        if isinstance(rows, list):
            return rows[0] if rows else {}
        return rows or {}

    async def update(
        self, table: str, values: dict, conditions: list[Condition]
    ) -> list[dict]:
        if not conditions:
            raise ValueError("Refusing to update without a filter.")
        rows = await self._run(
            "PATCH",
            table,
            self.settings.write_timeout_seconds,
            params=[encode_condition(c) for c in conditions],
            json=values,
            prefer="return=representation",
        )
        return rows if isinstance(rows, list) else []

    def subscribe_changes(
        self, table: str, callback: Callable[[RowChange], None]
    ) -> Callable[[], None]:
        raise ChangeFeedUnavailable(
            f"REST backend has no row-change feed for '{table}'; poll for updates."
        )

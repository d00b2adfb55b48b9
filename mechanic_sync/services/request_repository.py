"""
Чтение и создание заявок с учетом различий схемы.

Все строки проходят через normalize_request, наружу отдаются только
канонические модели.
"""

import logging

from mechanic_sync.core.config import Settings, settings as default_settings
from mechanic_sync.core.errors import ErrorKind, UnknownFailure
from mechanic_sync.models.request import Contact, Location, Request, Vehicle, utc_now
from mechanic_sync.models.status import CanonicalStatus
from mechanic_sync.models.user import Actor
from mechanic_sync.services.normalizer import normalize_request
from mechanic_sync.services.notes_service import NotesManager, merge_notes
from mechanic_sync.services.schema_variants import SchemaVariant, run_with_fallback
from mechanic_sync.services.storage import (
    Backend,
    Embed,
    classify_storage_error,
    eq,
    is_null,
    to_portal_error,
)

logger = logging.getLogger(__name__)


class RequestRepository:
    def __init__(
        self,
        backend: Backend,
        notes: NotesManager,
        settings: Settings | None = None,
    ) -> None:
        self.backend = backend
        self.notes = notes
        self.settings = settings or default_settings

    @property
    def table(self) -> str:
        return self.settings.requests_table

    async def fetch(self, request_id: str) -> Request | None:
        """Загружает заявку вместе с заметками из отдельной таблицы."""
        try:
            rows = await self.backend.select(self.table, [eq("id", request_id)], limit=1)
        except Exception as e:
            raise to_portal_error(e, "Could not load request.") from e
        if not rows:
            return None

        request = normalize_request(rows[0])
        stored_notes = await self.notes.list_notes(request_id)
        if stored_notes:
            request.notes = merge_notes(request.notes, stored_notes)
        return request

    async def _list(self, operation: str, build_conditions) -> list[Request]:
        async def attempt(variant: SchemaVariant) -> list[dict]:
            return await self.backend.select(
                self.table,
                build_conditions(variant),
                order_by="created_at",
                descending=True,
            )

        rows = await run_with_fallback(operation, attempt, "Could not load requests.")
        requests = [normalize_request(row) for row in rows]
        dropped = [r for r in requests if not r.id]
        if dropped:
            logger.warning(f"{operation}: skipped {len(dropped)} record(s) without an id.")
        return [r for r in requests if r.id]

    async def list_unassigned(self) -> list[Request]:
        """Открытые заявки без исполнителя, новые сначала."""
        requests = await self._list(
            "list unassigned",
            lambda variant: [is_null(variant.assignee_column)],
        )
        return [r for r in requests if r.status is CanonicalStatus.OPEN]

    async def list_assigned_to(self, mechanic_id: str) -> list[Request]:
        """
        Заявки механика, новые сначала.

        Источник - журнал assignments с вложенной строкой заявки; если такой
        таблицы нет, заявки ищутся по колонке исполнителя.
        """
        try:
            rows = await self.backend.select(
                self.settings.assignments_table,
                [eq("mechanic_id", mechanic_id)],
                order_by="request_id",
                descending=True,
                embed=Embed("request", self.table, "request_id"),
            )
        except Exception as e:
            if classify_storage_error(e) is not ErrorKind.SCHEMA_MISMATCH:
                raise to_portal_error(e, "Could not load assignments.") from e
            logger.info(f"No assignments ledger ({e}); reading the assignee column instead.")
            return await self._list(
                f"list assignments of {mechanic_id}",
                lambda variant: [eq(variant.assignee_column, mechanic_id)],
            )

        requests: dict[str, Request] = {}
        for row in rows:
            if not row.get("request"):
                continue
            request = normalize_request(row)
            if request.id and request.id not in requests:
                requests[request.id] = request
        return sorted(
            requests.values(),
            key=lambda r: r.created_at.isoformat() if r.created_at else "",
            reverse=True,
        )

    async def create(
        self,
        requester: Actor,
        vehicle: Vehicle,
        issue_description: str,
        contact: Contact,
        location: Location | None = None,
    ) -> Request:
        """
        Создает заявку в статусе OPEN без исполнителя.

        Идентификатор генерирует хранилище. Если в развертывании нет
        JSON-колонок vehicle/contact, используются плоские колонки.
        """
        now = utc_now().isoformat()

        async def attempt(variant: SchemaVariant) -> dict:
            values = {
                "created_at": now,
                "user_id": requester.id,
                "user_email": requester.email,
                "issue_description": issue_description,
                "status": variant.token(CanonicalStatus.OPEN),
                variant.assignee_column: None,
                variant.assignee_email_column: None,
                "notes": [],
                **variant.request_values(vehicle, contact, location),
            }
            return await self.backend.insert(self.table, variant.touch(values, now))

        row = await run_with_fallback(
            f"create request for {requester.id}", attempt, "Could not create request."
        )
        if not row:
            raise UnknownFailure("Failed to insert request.")

        request = normalize_request(row)
        logger.info(f"Request {request.id} created by {requester.id}.")
        return request

"""
Атомарные переходы заявки по жизненному циклу.

    OPEN -(claim)-> ASSIGNED -(start)-> IN_PROGRESS -(complete)-> COMPLETED
    OPEN | ASSIGNED | IN_PROGRESS -(cancel)-> CANCELLED

Каждый переход - одно условное обновление (UPDATE ... WHERE <guard> RETURNING *).
Условие проверяется бэкендом в той же атомарной операции, что и запись;
распределенной блокировки нет, и корректность при гонке двух механиков держится
только на этом. Если обновление не затронуло ни одной строки, одно
диагностическое чтение определяет, какую ошибку вернуть.
"""

import logging

from mechanic_sync.core.config import Settings, settings as default_settings
from mechanic_sync.core.decorators import require_role
from mechanic_sync.core.errors import (
    AlreadyAssigned,
    ErrorKind,
    Forbidden,
    InvalidTransition,
    NotFound,
    PortalError,
    UnknownFailure,
)
from mechanic_sync.models.event import ChangeEvent
from mechanic_sync.models.request import Request, utc_now
from mechanic_sync.models.status import (
    CanonicalStatus,
    TERMINAL_STATUSES,
    canonicalize,
    stored_spellings,
)
from mechanic_sync.models.user import Actor
from mechanic_sync.services.event_bus import ChangeBus
from mechanic_sync.services.normalizer import normalize_request
from mechanic_sync.services.notes_service import NotesManager
from mechanic_sync.services.request_repository import RequestRepository
from mechanic_sync.services.schema_variants import SchemaVariant, run_with_fallback
from mechanic_sync.services.session_gate import SessionGate
from mechanic_sync.services.storage import (
    Backend,
    Condition,
    any_of,
    classify_storage_error,
    eq,
    in_,
    is_null,
    not_in,
)

logger = logging.getLogger(__name__)

CLAIM_NOTE = "Accepted request."
START_NOTE = "Started work."
COMPLETE_NOTE = "Completed request."
CANCEL_NOTE = "Request cancelled."

_LIFECYCLE = (
    CanonicalStatus.OPEN,
    CanonicalStatus.ASSIGNED,
    CanonicalStatus.IN_PROGRESS,
    CanonicalStatus.COMPLETED,
)


def status_not_in(*statuses: CanonicalStatus) -> Condition:
    """
    Статус строки не приводится ни к одному из statuses.

    NULL, пустой и неизвестный токен канонически равны OPEN, поэтому
    проходят условие явно, а не через NOT IN.
    """
    spellings = [s for status in statuses for s in stored_spellings(status)]
    return any_of(is_null("status"), not_in("status", spellings))


class TransitionEngine:
    def __init__(
        self,
        backend: Backend,
        gate: SessionGate,
        repository: RequestRepository,
        notes: NotesManager,
        bus: ChangeBus,
        settings: Settings | None = None,
    ) -> None:
        self.backend = backend
        self.gate = gate
        self.repository = repository
        self.notes = notes
        self.bus = bus
        self.settings = settings or default_settings

    # --- Переходы ---

    @require_role("mechanic")
    async def claim(self, request_id: str, note: str | None = None, *, actor: Actor) -> Request:
        """
        Назначает открытую заявку на текущего механика.

        Условие: исполнителя нет и заявка не закрыта. Повторный claim тем же
        механиком - успешная операция без записи и без новой заметки.
        После успешного назначения строка журнала назначений пишется
        по возможности (если такой таблицы нет, шаг пропускается).
        """
        logger.info(f"Claiming request {request_id} by mechanic {actor.id}.")
        now = utc_now().isoformat()

        def build(variant: SchemaVariant) -> tuple[dict, list[Condition]]:
            values = {
                variant.assignee_column: actor.id,
                variant.assignee_email_column: actor.email,
                "status": variant.token(CanonicalStatus.ASSIGNED),
            }
            variant.stamp(values, variant.assigned_at_column, now)
            guard = [
                eq("id", request_id),
                is_null(variant.assignee_column),
                status_not_in(*TERMINAL_STATUSES),
            ]
            return variant.touch(values, now), guard

        rows = await self._guarded_write("claim", request_id, build)
        if rows:
            await self._record_assignment(request_id, actor)
            return await self._after_write(
                "claimed", request_id, rows[0], actor, note or CLAIM_NOTE
            )

        current = await self._load(request_id)
        if current.is_held_by(actor.id):
            logger.info(f"Request {request_id} is already held by {actor.id}; claim is a no-op.")
            return current
        if current.is_assigned:
            logger.warning(
                f"Mechanic {actor.id} tried to claim request {request_id}, "
                f"but it is assigned to {current.assigned_mechanic_id}."
            )
            raise AlreadyAssigned()
        if current.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                InvalidTransition.WRONG_STATE,
                "This request is closed and can no longer be claimed.",
            )
        logger.warning(
            f"Claim guard for {request_id} missed an unassigned request "
            f"(raw status '{current.raw_status}')."
        )
        raise UnknownFailure("Could not claim this request. Please refresh and try again.")

    @require_role("mechanic")
    async def start(self, request_id: str, note: str | None = None, *, actor: Actor) -> Request:
        """Переводит назначенную на механика заявку в работу."""
        logger.info(f"Starting request {request_id} by mechanic {actor.id}.")
        now = utc_now().isoformat()

        def build(variant: SchemaVariant) -> tuple[dict, list[Condition]]:
            values = {"status": variant.token(CanonicalStatus.IN_PROGRESS)}
            # Назначенная строка с пустым или неизвестным статусом тоже ASSIGNED
            guard = [
                eq("id", request_id),
                eq(variant.assignee_column, actor.id),
                status_not_in(CanonicalStatus.IN_PROGRESS, *TERMINAL_STATUSES),
            ]
            return variant.touch(values, now), guard

        rows = await self._guarded_write("start", request_id, build)
        if rows:
            return await self._after_write(
                "started", request_id, rows[0], actor, note or START_NOTE
            )
        return await self._explain_miss(request_id, actor, CanonicalStatus.IN_PROGRESS)

    @require_role("mechanic")
    async def complete(
        self, request_id: str, note: str | None = None, *, actor: Actor
    ) -> Request:
        """Завершает заявку; время завершения пишется в том же обновлении, что и статус."""
        logger.info(f"Completing request {request_id} by mechanic {actor.id}.")
        now = utc_now().isoformat()

        def build(variant: SchemaVariant) -> tuple[dict, list[Condition]]:
            values = {"status": variant.token(CanonicalStatus.COMPLETED)}
            variant.stamp(values, variant.completed_at_column, now)
            guard = [
                eq("id", request_id),
                eq(variant.assignee_column, actor.id),
                in_("status", stored_spellings(CanonicalStatus.IN_PROGRESS)),
            ]
            return variant.touch(values, now), guard

        rows = await self._guarded_write("complete", request_id, build)
        if rows:
            return await self._after_write(
                "completed", request_id, rows[0], actor, note or COMPLETE_NOTE
            )
        return await self._explain_miss(request_id, actor, CanonicalStatus.COMPLETED)

    @require_role("admin")
    async def cancel(
        self, request_id: str, reason: str | None = None, *, actor: Actor
    ) -> Request:
        """Административная отмена заявки из любого незавершенного состояния."""
        logger.info(f"Cancelling request {request_id} by {actor.id}.")
        now = utc_now().isoformat()

        def build(variant: SchemaVariant) -> tuple[dict, list[Condition]]:
            values = {"status": variant.token(CanonicalStatus.CANCELLED)}
            guard = [eq("id", request_id), status_not_in(*TERMINAL_STATUSES)]
            return variant.touch(values, now), guard

        rows = await self._guarded_write("cancel", request_id, build)
        if rows:
            return await self._after_write(
                "cancelled", request_id, rows[0], actor, reason or CANCEL_NOTE
            )

        current = await self._load(request_id)
        if current.status is CanonicalStatus.CANCELLED:
            return current
        raise InvalidTransition(
            InvalidTransition.WRONG_STATE, "This request is already closed."
        )

    @require_role("mechanic")
    async def advance(
        self, request_id: str, raw_status: str, note: str | None = None, *, actor: Actor
    ) -> Request:
        """
        Доводит заявку до статуса raw_status (любое написание, включая legacy).

        Недостающие шаги выполняются по порядку: неназначенная заявка сначала
        назначается, затем переводится в работу и завершается. Заметка
        прикрепляется к последнему шагу. Отмена доступна только через cancel.
        """
        target = canonicalize(raw_status)
        if target is CanonicalStatus.OPEN:
            raise InvalidTransition(
                InvalidTransition.WRONG_STATE, "A request cannot be moved back to open."
            )
        if target is CanonicalStatus.CANCELLED:
            logger.warning(f"Mechanic {actor.id} tried to cancel request {request_id}.")
            raise Forbidden("Only an admin can cancel a request.")

        current = await self._load(request_id)
        if current.is_assigned and not current.is_held_by(actor.id):
            raise AlreadyAssigned()

        result = current
        if not result.is_assigned:
            result = await self.claim(
                request_id, note if target is CanonicalStatus.ASSIGNED else None
            )
        if target is not CanonicalStatus.ASSIGNED and result.status is CanonicalStatus.ASSIGNED:
            result = await self.start(
                request_id, note if target is CanonicalStatus.IN_PROGRESS else None
            )
        if target is CanonicalStatus.COMPLETED and result.status is CanonicalStatus.IN_PROGRESS:
            result = await self.complete(request_id, note)

        if result.status in _LIFECYCLE and _LIFECYCLE.index(result.status) < _LIFECYCLE.index(target):
            raise InvalidTransition(InvalidTransition.WRONG_STATE)
        return result

    # --- Внутренние шаги ---

    async def _record_assignment(self, request_id: str, actor: Actor) -> None:
        """Строка assignments (mechanic_id, request_id) без дублей. Ошибки только логируются."""
        table = self.settings.assignments_table
        try:
            existing = await self.backend.select(
                table, [eq("request_id", request_id), eq("mechanic_id", actor.id)], limit=1
            )
            if not existing:
                await self.backend.insert(table, {"mechanic_id": actor.id, "request_id": request_id})
        except Exception as e:
            if classify_storage_error(e) is ErrorKind.SCHEMA_MISMATCH:
                logger.debug(f"No assignments ledger in this deployment: {e}")
                return
            logger.warning(f"Could not record assignment of {request_id} to {actor.id}: {e}")

    async def _guarded_write(self, action: str, request_id: str, build) -> list[dict]:
        async def attempt(variant: SchemaVariant) -> list[dict]:
            values, guard = build(variant)
            return await self.backend.update(self.settings.requests_table, values, guard)

        return await run_with_fallback(
            f"{action} {request_id}", attempt, f"Could not {action} this request."
        )

    async def _load(self, request_id: str) -> Request:
        current = await self.repository.fetch(request_id)
        if current is None:
            logger.warning(f"Request {request_id} not found.")
            raise NotFound()
        return current

    async def _explain_miss(
        self, request_id: str, actor: Actor, target: CanonicalStatus
    ) -> Request:
        current = await self._load(request_id)
        if current.is_held_by(actor.id) and current.status is target:
            logger.info(f"Request {request_id} is already {target.value}; nothing to do.")
            return current
        if not current.is_assigned:
            reason = InvalidTransition.NOT_CLAIMED
        elif not current.is_held_by(actor.id):
            reason = InvalidTransition.NOT_ASSIGNEE
        else:
            reason = InvalidTransition.WRONG_STATE
        logger.warning(
            f"Mechanic {actor.id} cannot move request {request_id} to {target.value}: "
            f"{reason} (status '{current.status.value}')."
        )
        raise InvalidTransition(reason)

    async def _after_write(
        self, action: str, request_id: str, row: dict, actor: Actor, note_text: str
    ) -> Request:
        """Журнал, событие и перечитывание после успешной записи. Ошибки здесь переход не отменяют."""
        logger.info(f"Request {request_id} {action} by {actor.id}.")
        await self.notes.append_note(request_id, actor.signature, note_text, snapshot=row)

        try:
            request = await self.repository.fetch(request_id)
        except PortalError as e:
            logger.warning(f"Could not re-read request {request_id} after {action}: {e}")
            request = None
        if request is None:
            request = normalize_request(row)

        self.bus.publish(
            ChangeEvent(action=action, record_id=request_id, source="local", request=request)
        )
        return request

"""
Точка сборки портала механика.

Portal - фасад одной клиентской сессии: создается при входе, закрывается
при выходе. Здесь связываются хранилище, аутентификация, проверки доступа,
переходы, журнал и шина изменений.
"""

import logging
from typing import Callable

from mechanic_sync.core.config import Settings, settings as default_settings
from mechanic_sync.core.decorators import require_role
from mechanic_sync.core.errors import Unauthenticated
from mechanic_sync.models.event import ChangeEvent
from mechanic_sync.models.request import Contact, Location, Request, Vehicle
from mechanic_sync.models.user import Actor
from mechanic_sync.services.auth_service import BaseAuth, LocalAuth, SupabaseAuth
from mechanic_sync.services.backend_api import PostgrestBackend
from mechanic_sync.services.event_bus import ChangeBus, Handler
from mechanic_sync.services.local_store import KeyValueStore, LocalBackend
from mechanic_sync.services.notes_service import NotesManager
from mechanic_sync.services.request_repository import RequestRepository
from mechanic_sync.services.session_gate import SessionGate
from mechanic_sync.services.storage import Backend
from mechanic_sync.services.transition_engine import TransitionEngine
from mechanic_sync.services.user_service import ProfileService

logger = logging.getLogger(__name__)

ANY_ROLE = ("user", "mechanic", "admin")


class Portal:
    def __init__(
        self,
        backend: Backend,
        auth: BaseAuth,
        profiles: ProfileService,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.backend = backend
        self.auth = auth
        self.profiles = profiles
        self.gate = SessionGate(auth)
        self.bus = ChangeBus()
        self.notes = NotesManager(backend, self.settings)
        self.repository = RequestRepository(backend, self.notes, self.settings)
        self.engine = TransitionEngine(
            backend, self.gate, self.repository, self.notes, self.bus, self.settings
        )
        self.bus.subscribe(self.profiles.on_change)

    # --- Сессия ---

    async def sign_in(self, email: str, password: str) -> Actor:
        return await self.auth.sign_in(email, password)

    async def sign_out(self) -> None:
        await self.auth.sign_out()
        self.profiles.invalidate()

    async def current_actor(self) -> Actor | None:
        return await self.auth.current_actor()

    async def register_mechanic(
        self,
        name: str,
        email: str,
        password: str,
        phone: str | None = None,
        service_area: str | None = None,
    ) -> Actor:
        """
        Регистрирует механика: учетная запись + профиль в статусе pending.

        Если после регистрации сессия не появилась, пробуем войти; если и это
        не дало сессии (ждет подтверждения email), сообщаем об этом.
        """
        user = await self.auth.sign_up(email, password)
        if not self.auth.has_session():
            try:
                await self.auth.sign_in(email, password)
            except Unauthenticated as e:
                logger.info(f"No session after sign-up for {user.id}: {e}")
        if not self.auth.has_session():
            raise Unauthenticated(
                "Account created, but no session was established. "
                "Confirm your email address, then sign in."
            )

        actor = await self.profiles.create_mechanic_profile(
            user.id, user.email, name.strip(), phone, service_area
        )
        self.bus.publish(ChangeEvent(topic="profiles", action="created", record_id=user.id))
        return actor

    @require_role("mechanic", approved=False)
    async def update_profile(
        self,
        display_name: str | None = None,
        service_area: str | None = None,
        *,
        actor: Actor,
    ) -> Actor:
        updated = await self.profiles.update_profile(actor, display_name, service_area)
        self.bus.publish(ChangeEvent(topic="profiles", action="updated", record_id=actor.id))
        return updated

    # --- Заявки ---

    @require_role(*ANY_ROLE, approved=False)
    async def create_request(
        self,
        vehicle: Vehicle,
        issue_description: str,
        contact: Contact,
        location: Location | None = None,
        *,
        actor: Actor,
    ) -> Request:
        request = await self.repository.create(
            actor, vehicle, issue_description.strip(), contact, location
        )
        self.bus.publish(
            ChangeEvent(action="created", record_id=request.id, request=request)
        )
        return request

    @require_role(*ANY_ROLE, approved=False)
    async def get_request(self, request_id: str, *, actor: Actor) -> Request | None:
        return await self.repository.fetch(request_id)

    @require_role("mechanic")
    async def list_unassigned(self, *, actor: Actor) -> list[Request]:
        return await self.repository.list_unassigned()

    @require_role("mechanic")
    async def list_my_assignments(self, *, actor: Actor) -> list[Request]:
        # Идентификатор берется из сессии, а не от вызывающего кода
        return await self.repository.list_assigned_to(actor.id)

    async def claim(self, request_id: str) -> Request:
        return await self.engine.claim(request_id)

    async def start(self, request_id: str, note: str | None = None) -> Request:
        return await self.engine.start(request_id, note)

    async def complete(self, request_id: str, note: str | None = None) -> Request:
        return await self.engine.complete(request_id, note)

    async def cancel(self, request_id: str, reason: str | None = None) -> Request:
        return await self.engine.cancel(request_id, reason)

    async def advance(self, request_id: str, status: str, note: str | None = None) -> Request:
        return await self.engine.advance(request_id, status, note)

    # --- Изменения ---

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        return self.bus.subscribe(handler)

    def connect_remote(self) -> bool:
        """Включает push-обновления от бэкенда (если он их поддерживает)."""
        requests_feed = self.bus.connect_remote(
            self.backend, self.settings.requests_table, topic="requests"
        )
        self.bus.connect_remote(self.backend, self.settings.profiles_table, topic="profiles")
        return requests_feed

    def close(self) -> None:
        self.bus.close()
        logger.info("Portal session closed.")


def create_portal(
    settings: Settings | None = None,
    backend: Backend | None = None,
    session_key: str = "session",
) -> Portal:
    """
    Собирает портал для одной сессии.

    При BACKEND_URL + BACKEND_KEY используется REST-бэкенд, иначе - локальное
    хранилище с демо-данными.
    """
    settings = settings or default_settings

    if backend is None and settings.online:
        logger.info("Backend configured; running in online mode.")
        # Токен берется из auth, который создается ниже
        holder: dict[str, SupabaseAuth] = {}
        backend = PostgrestBackend(
            settings, token_provider=lambda: holder["auth"].access_token if holder else None
        )
        profiles = ProfileService(backend, settings)
        auth: BaseAuth = SupabaseAuth(profiles, settings)
        holder["auth"] = auth
    else:
        if backend is None:
            logger.info("Backend not configured; running with the local store.")
            backend = LocalBackend(KeyValueStore(settings.local_store_path))
        profiles = ProfileService(backend, settings)
        if not isinstance(backend, LocalBackend):
            raise ValueError("A custom backend needs online settings for authentication.")
        backend.ensure_seed_data()
        auth = LocalAuth(backend.store, profiles, session_key=session_key)

    return Portal(backend, auth, profiles, settings)

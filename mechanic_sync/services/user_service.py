"""
Сервисный модуль для управления профилями пользователей.

Реализует получение профиля (роль, одобрение, данные механика) из хранилища
с кэшированием по TTL, регистрацию профиля механика и редактирование
собственного профиля.
"""

import logging
import time

from mechanic_sync.core.config import Settings, settings as default_settings
from mechanic_sync.core.errors import ErrorKind, UnknownFailure
from mechanic_sync.models.event import ChangeEvent
from mechanic_sync.models.user import Actor
from mechanic_sync.services.normalizer import normalize_profile
from mechanic_sync.services.storage import (
    Backend,
    classify_storage_error,
    eq,
    to_portal_error,
)

logger = logging.getLogger(__name__)


class ProfileService:
    """
    Сервис для работы с профилями пользователей.
    """

    def __init__(self, backend: Backend, settings: Settings | None = None):
        self.backend = backend
        self.settings = settings or default_settings
        self._cache_ttl = self.settings.profile_cache_ttl_seconds
        self._profile_cache: dict[str, tuple[Actor, float]] = {}

    @property
    def table(self) -> str:
        return self.settings.profiles_table

    def _cached(self, user_id: str, allow_stale: bool = False) -> Actor | None:
        entry = self._profile_cache.get(user_id)
        if entry is None:
            return None
        actor, timestamp = entry
        if allow_stale or (time.time() - timestamp) < self._cache_ttl:
            return actor
        return None

    async def get_profile(self, user_id: str, email: str = "") -> Actor:
        cached = self._cached(user_id)
        if cached is not None:
            logger.debug(f"Returning profile {user_id} from cache.")
            return cached

        logger.info(f"Cache is expired or empty. Fetching profile {user_id}...")
        try:
            rows = await self.backend.select(self.table, [eq("id", user_id)], limit=1)
            if rows:
                actor = normalize_profile(rows[0], user_id=user_id, email=email)
            else:
                actor = await self._create_default_profile(user_id, email)
        except Exception as e:
            logger.error(f"Failed to fetch profile {user_id}: {e}", exc_info=True)
            stale = self._cached(user_id, allow_stale=True)
            if stale is not None:
                logger.warning("Returning stale profile cache due to fetch failure.")
                return stale
            # Без профиля - минимальные права, механиком такой пользователь не станет
            return Actor(id=user_id, email=email, role="user", approval="approved")

        self._profile_cache[user_id] = (actor, time.time())
        return actor

    async def _create_default_profile(self, user_id: str, email: str) -> Actor:
        """Первый вход без строки профиля: создаем профиль обычного пользователя."""
        row = {"id": user_id, "email": email, "role": "user", "approval_status": "approved"}
        try:
            await self.backend.insert(self.table, row)
            logger.info(f"Default profile created for {user_id}.")
        except Exception as e:
            logger.warning(f"Could not create default profile for {user_id}: {e}")
        return normalize_profile(row)

    async def create_mechanic_profile(
        self,
        user_id: str,
        email: str,
        name: str,
        phone: str | None = None,
        service_area: str | None = None,
    ) -> Actor:
        """
        Создает профиль механика в статусе pending.

        Сначала данные пишутся во вложенный объект profile, при отсутствии
        такой колонки - в плоские колонки.
        """
        base = {"id": user_id, "email": email, "role": "mechanic", "approval_status": "pending"}
        shapes = [
            {
                **base,
                "approved": False,
                "profile": {"name": name, "phone": phone or "", "serviceArea": service_area or ""},
            },
            {**base, "display_name": name, "phone": phone or "", "service_area": service_area or ""},
        ]
        row = await self._write_first_compatible(
            self._upsert,
            shapes,
            "Could not create mechanic profile.",
        )
        self.invalidate(user_id)
        logger.info(f"Pending mechanic profile created for {user_id}.")
        return normalize_profile(row or shapes[-1], user_id=user_id, email=email)

    async def update_profile(
        self,
        actor: Actor,
        display_name: str | None = None,
        service_area: str | None = None,
    ) -> Actor:
        """Обновляет имя и район обслуживания. Роль и одобрение здесь не меняются."""
        name = actor.display_name if display_name is None else display_name.strip()
        area = actor.service_area if service_area is None else service_area.strip()
        shapes = [
            {"profile": {"name": name, "phone": actor.phone, "serviceArea": area}},
            {"display_name": name, "service_area": area},
        ]
        await self._write_first_compatible(
            lambda shape: self.backend.update(self.table, shape, [eq("id", actor.id)]),
            shapes,
            "Could not save profile.",
        )
        self.invalidate(actor.id)
        logger.info(f"Profile of {actor.id} updated.")
        return actor.model_copy(update={"display_name": name, "service_area": area})

    async def _upsert(self, shape: dict) -> dict:
        # Строка могла появиться при первом входе (_create_default_profile)
        existing = await self.backend.select(self.table, [eq("id", shape["id"])], limit=1)
        if not existing:
            return await self.backend.insert(self.table, shape)
        values = {k: v for k, v in shape.items() if k != "id"}
        rows = await self.backend.update(self.table, values, [eq("id", shape["id"])])
        return rows[0] if rows else {**existing[0], **values}

    async def _write_first_compatible(self, write, shapes: list[dict], failure_message: str):
        last_error: Exception | None = None
        for shape in shapes:
            try:
                return await write(shape)
            except Exception as e:
                if classify_storage_error(e) is not ErrorKind.SCHEMA_MISMATCH:
                    raise to_portal_error(e, failure_message) from e
                logger.warning(f"Profile shape rejected by backend ({e}); trying next shape.")
                last_error = e
        raise UnknownFailure(failure_message) from last_error

    def invalidate(self, user_id: str | None = None) -> None:
        if user_id is None:
            self._profile_cache.clear()
            logger.info("Profile cache cleared.")
        else:
            self._profile_cache.pop(user_id, None)
            logger.info(f"Profile cache cleared for {user_id}.")

    def on_change(self, event: ChangeEvent) -> None:
        """Обработчик шины: изменение профиля на бэкенде сбрасывает кэш."""
        if event.topic == "profiles":
            self.invalidate(event.record_id)

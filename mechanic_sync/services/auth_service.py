"""
Провайдеры аутентификации: локальный (демо) и онлайн (GoTrue-совместимый REST API).

Оба отдают текущего пользователя вместе с профилем (Actor). Успешный вызов
sign_up/sign_in сам по себе не гарантирует сессию во всех режимах бэкенда
(например, при подтверждении email), поэтому наличие сессии проверяется
явно через has_session().
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

import requests

from mechanic_sync.core.config import Settings, settings as default_settings
from mechanic_sync.core.errors import Unauthenticated, UnknownFailure
from mechanic_sync.models.user import Actor
from mechanic_sync.services.backend_api import (
    backend_retry,
    send_request,
    storage_error_from_response,
)
from mechanic_sync.services.local_store import KeyValueStore
from mechanic_sync.services.storage import to_portal_error
from mechanic_sync.services.user_service import ProfileService

logger = logging.getLogger(__name__)


@dataclass
class AuthUser:
    id: str
    email: str


class BaseAuth(ABC):
    """Общая часть: пользователь сессии + профиль из ProfileService."""

    def __init__(self, profiles: ProfileService) -> None:
        self.profiles = profiles

    @abstractmethod
    async def current_user(self) -> AuthUser | None: ...

    @abstractmethod
    def has_session(self) -> bool: ...

    async def current_actor(self) -> Actor | None:
        user = await self.current_user()
        if user is None:
            return None
        return await self.profiles.get_profile(user.id, user.email)

    async def sign_in(self, email: str, password: str) -> Actor:
        user = await self._sign_in(email.strip(), password)
        logger.info(f"User {user.id} signed in.")
        return await self.profiles.get_profile(user.id, user.email)

    @abstractmethod
    async def _sign_in(self, email: str, password: str) -> AuthUser: ...

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> AuthUser: ...

    @abstractmethod
    async def sign_out(self) -> None: ...


class LocalAuth(BaseAuth):
    """
    Демо-аутентификация поверх локального key-value хранилища.

    Указатель сессии хранится под session_key, поэтому несколько сессий
    (устройств) могут делить одно хранилище.
    """

    def __init__(
        self,
        store: KeyValueStore,
        profiles: ProfileService,
        session_key: str = "session",
    ) -> None:
        super().__init__(profiles)
        self.store = store
        self.session_key = session_key

    def _users(self) -> list[dict]:
        return self.store.get("users", [])

    async def current_user(self) -> AuthUser | None:
        session = self.store.get(self.session_key)
        if not session or not session.get("user_id"):
            return None
        for user in self._users():
            if user["id"] == session["user_id"]:
                return AuthUser(id=user["id"], email=user["email"])
        return None

    def has_session(self) -> bool:
        return bool((self.store.get(self.session_key) or {}).get("user_id"))

    async def _sign_in(self, email: str, password: str) -> AuthUser:
        for user in self._users():
            if user["email"].lower() == email.lower() and user["password"] == password:
                self.store.set(self.session_key, {"user_id": user["id"]})
                return AuthUser(id=user["id"], email=user["email"])
        logger.warning(f"Failed local sign-in for {email}.")
        raise Unauthenticated("Invalid email or password.")

    async def sign_up(self, email: str, password: str) -> AuthUser:
        email = email.strip()
        users = self._users()
        if any(u["email"].lower() == email.lower() for u in users):
            raise UnknownFailure("An account with this email already exists.")
        user = {"id": f"u_{uuid.uuid4().hex[:12]}", "email": email, "password": password}
        users.append(user)
        self.store.set("users", users)
        self.store.set(self.session_key, {"user_id": user["id"]})
        logger.info(f"Local user {user['id']} registered.")
        return AuthUser(id=user["id"], email=email)

    async def sign_out(self) -> None:
        self.store.delete(self.session_key)


class SupabaseAuth(BaseAuth):
    """Аутентификация через REST API /auth/v1 бэкенда."""

    def __init__(
        self,
        profiles: ProfileService,
        settings: Settings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(profiles)
        self.settings = settings or default_settings
        self.base_url = (self.settings.backend_url or "").rstrip("/") + "/auth/v1"
        self.session = session or requests.Session()
        self._access_token: str | None = None
        self._user: AuthUser | None = None

    @property
    def access_token(self) -> str | None:
        return self._access_token

    def has_session(self) -> bool:
        return self._access_token is not None

    def _headers(self, with_token: bool = False) -> dict:
        headers = {"apikey": self.settings.backend_key or "", "Content-Type": "application/json"}
        if with_token and self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    @staticmethod
    def _raise_for_server_error(response: requests.Response) -> requests.Response:
        """5xx превращается в StorageError, чтобы сработал повтор; 4xx разбирает вызывающий код."""
        if response.status_code >= 500:
            error = storage_error_from_response(response)
            logger.warning(f"Auth API error {response.status_code}: {error.message}")
            raise error
        return response

    @backend_retry
    def _post(self, path: str, payload: dict | None = None, with_token: bool = False) -> requests.Response:
        response = send_request(
            self.session,
            "POST",
            f"{self.base_url}{path}",
            self.settings.write_timeout_seconds,
            json=payload or {},
            headers=self._headers(with_token),
        )
        return self._raise_for_server_error(response)

    @backend_retry
    def _get(self, path: str) -> requests.Response:
        response = send_request(
            self.session,
            "GET",
            f"{self.base_url}{path}",
            self.settings.read_timeout_seconds,
            headers=self._headers(with_token=True),
        )
        return self._raise_for_server_error(response)

    async def _call(self, fn, *args, failure_message: str, **kwargs) -> requests.Response:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            raise to_portal_error(e, failure_message) from e

    def _remember(self, payload: dict) -> AuthUser | None:
        """Запоминает сессию из ответа auth API, если она там есть."""
        user = payload.get("user") or (payload if payload.get("id") else None)
        token = payload.get("access_token")
        if token:
            self._access_token = token
        if user and user.get("id"):
            self._user = AuthUser(id=str(user["id"]), email=user.get("email") or "")
        return self._user

    async def _sign_in(self, email: str, password: str) -> AuthUser:
        response = await self._call(
            self._post,
            "/token?grant_type=password",
            {"email": email, "password": password},
            failure_message="Login failed.",
        )
        if response.status_code >= 400:
            error = storage_error_from_response(response)
            logger.warning(f"Sign-in rejected for {email}: {error.message}")
            raise Unauthenticated(error.message or "Invalid email or password.")
        user = self._remember(response.json())
        if user is None or not self.has_session():
            raise Unauthenticated("Login did not establish a session.")
        return user

    async def sign_up(self, email: str, password: str) -> AuthUser:
        response = await self._call(
            self._post,
            "/signup",
            {"email": email.strip(), "password": password},
            failure_message="Could not register.",
        )
        if response.status_code >= 400:
            error = storage_error_from_response(response)
            logger.warning(f"Sign-up rejected for {email}: {error.message}")
            raise UnknownFailure(error.message or "Could not register.")
        user = self._remember(response.json())
        if user is None:
            raise UnknownFailure("Registration returned no user.")
        if not self.has_session():
            logger.info(f"User {user.id} signed up without a session (email confirmation pending).")
        return user

    async def sign_out(self) -> None:
        if self._access_token:
            try:
                await asyncio.to_thread(self._post, "/logout", None, True)
            except Exception as e:
                logger.warning(f"Remote sign-out failed, clearing local session anyway: {e}")
        self._access_token = None
        self._user = None

    async def current_user(self) -> AuthUser | None:
        if not self._access_token:
            return None
        response = await self._call(self._get, "/user", failure_message="Authentication error.")
        if response.status_code in (401, 403):
            logger.info("Session token rejected; treating as signed out.")
            self._access_token = None
            self._user = None
            return None
        if response.status_code >= 400:
            raise to_portal_error(storage_error_from_response(response), "Authentication error.")
        return self._remember({"user": response.json()})

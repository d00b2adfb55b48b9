"""
Тесты для провайдеров аутентификации.
"""

import pytest
import requests

from mechanic_sync.core.config import Settings
from mechanic_sync.core.errors import Unauthenticated, UnknownFailure
from mechanic_sync.services.auth_service import BaseAuth, LocalAuth, SupabaseAuth
from mechanic_sync.services.local_store import DEMO_PASSWORD, LocalBackend
from mechanic_sync.services.user_service import ProfileService


@pytest.fixture
def seeded_backend() -> LocalBackend:
    backend = LocalBackend()
    backend.ensure_seed_data()
    return backend


@pytest.fixture
def local_auth(seeded_backend, test_settings) -> LocalAuth:
    profiles = ProfileService(seeded_backend, test_settings)
    return LocalAuth(seeded_backend.store, profiles)


@pytest.mark.asyncio
async def test_local_sign_in_returns_actor_with_profile(local_auth):
    """
    Тест: Вход демо-механиком дает одобренного механика и сессию.
    """
    actor = await local_auth.sign_in(" MECH@example.com ", DEMO_PASSWORD)

    assert (actor.role, actor.approval) == ("mechanic", "approved")
    assert actor.display_name == "Alex Mechanic"
    assert local_auth.has_session()
    assert (await local_auth.current_actor()).id == actor.id


@pytest.mark.asyncio
async def test_local_sign_in_wrong_password(local_auth):
    with pytest.raises(Unauthenticated):
        await local_auth.sign_in("mech@example.com", "wrong")
    assert not local_auth.has_session()
    assert await local_auth.current_actor() is None


@pytest.mark.asyncio
async def test_local_sign_up_and_sign_out(local_auth):
    user = await local_auth.sign_up("new@example.com", "secret")

    assert local_auth.has_session()
    assert (await local_auth.current_user()).id == user.id
    with pytest.raises(UnknownFailure):
        await local_auth.sign_up("NEW@example.com", "other")

    await local_auth.sign_out()
    assert await local_auth.current_user() is None


@pytest.mark.asyncio
async def test_sessions_are_isolated_by_key(seeded_backend, test_settings):
    """
    Тест: Две сессии на одном хранилище не видят входов друг друга.
    """
    profiles = ProfileService(seeded_backend, test_settings)
    first = LocalAuth(seeded_backend.store, profiles, session_key="session:a")
    second = LocalAuth(seeded_backend.store, profiles, session_key="session:b")

    await first.sign_in("admin@example.com", DEMO_PASSWORD)

    assert first.has_session()
    assert not second.has_session()


# --- Онлайн-аутентификация ---


@pytest.fixture
def online_settings() -> Settings:
    return Settings(_env_file=None, backend_url="https://db.example.com", backend_key="anon-key")


def _response(mocker, status_code=200, payload=None):
    response = mocker.Mock(spec=requests.Response)
    response.status_code = status_code
    response.content = b"{}"
    response.text = ""
    response.json.return_value = payload or {}
    return response


@pytest.fixture
def remote_profiles(mocker, mechanic):
    profiles = mocker.Mock(spec=ProfileService)
    profiles.get_profile = mocker.AsyncMock(return_value=mechanic)
    return profiles


@pytest.mark.asyncio
async def test_remote_sign_in_stores_token(online_settings, remote_profiles, mechanic, mocker):
    """
    Тест: Успешный вход сохраняет access-токен и загружает профиль.
    """
    # Arrange
    session = mocker.Mock(spec=requests.Session)
    session.request.return_value = _response(
        mocker, payload={"access_token": "tok", "user": {"id": mechanic.id, "email": mechanic.email}}
    )
    auth = SupabaseAuth(remote_profiles, online_settings, session=session)

    # Act
    actor = await auth.sign_in(mechanic.email, "pw")

    # Assert
    assert actor is mechanic
    assert auth.access_token == "tok"
    method, url = session.request.call_args.args
    assert (method, url) == ("POST", "https://db.example.com/auth/v1/token?grant_type=password")
    remote_profiles.get_profile.assert_awaited_once_with(mechanic.id, mechanic.email)


@pytest.mark.asyncio
async def test_remote_sign_in_rejected(online_settings, remote_profiles, mocker):
    session = mocker.Mock(spec=requests.Session)
    session.request.return_value = _response(
        mocker, status_code=400, payload={"error_description": "Invalid login credentials"}
    )
    auth = SupabaseAuth(remote_profiles, online_settings, session=session)

    with pytest.raises(Unauthenticated) as exc_info:
        await auth.sign_in("a@example.com", "bad")

    assert exc_info.value.message == "Invalid login credentials"
    assert not auth.has_session()


@pytest.mark.asyncio
async def test_remote_sign_up_without_session(online_settings, remote_profiles, mocker):
    """
    Тест: Регистрация с подтверждением email возвращает пользователя без сессии.
    """
    session = mocker.Mock(spec=requests.Session)
    session.request.return_value = _response(mocker, payload={"id": "u9", "email": "n@example.com"})
    auth = SupabaseAuth(remote_profiles, online_settings, session=session)

    user = await auth.sign_up("n@example.com", "pw")

    assert user.id == "u9"
    assert not auth.has_session()


@pytest.mark.asyncio
async def test_rejected_token_clears_session(online_settings, remote_profiles, mocker):
    session = mocker.Mock(spec=requests.Session)
    session.request.side_effect = [
        _response(mocker, payload={"access_token": "tok", "user": {"id": "u1", "email": "a@example.com"}}),
        _response(mocker, status_code=401, payload={"message": "JWT expired"}),
    ]
    auth = SupabaseAuth(remote_profiles, online_settings, session=session)
    await auth.sign_in("a@example.com", "pw")

    user = await auth.current_user()

    assert user is None
    assert not auth.has_session()


@pytest.mark.asyncio
async def test_remote_sign_in_retries_server_errors(online_settings, remote_profiles, mechanic, mocker):
    """
    Тест: Ответ 5xx от auth API повторяется, повторная попытка дает сессию.
    """
    # Arrange
    mocker.patch("time.sleep")
    session = mocker.Mock(spec=requests.Session)
    session.request.side_effect = [
        _response(mocker, status_code=502, payload={"message": "bad gateway"}),
        _response(mocker, payload={"access_token": "tok", "user": {"id": mechanic.id, "email": mechanic.email}}),
    ]
    auth = SupabaseAuth(remote_profiles, online_settings, session=session)

    # Act
    await auth.sign_in(mechanic.email, "pw")

    # Assert
    assert session.request.call_count == 2
    assert auth.access_token == "tok"


@pytest.mark.asyncio
async def test_persistent_server_error_is_not_a_bad_password(online_settings, remote_profiles, mocker):
    """
    Тест: Если 5xx не проходит после всех попыток, это сбой сервера, а не Unauthenticated.
    """
    mocker.patch("time.sleep")
    session = mocker.Mock(spec=requests.Session)
    session.request.return_value = _response(mocker, status_code=500, payload={"message": "boom"})
    auth = SupabaseAuth(remote_profiles, online_settings, session=session)

    with pytest.raises(UnknownFailure):
        await auth.sign_in("a@example.com", "pw")

    assert session.request.call_count == 3
    assert not auth.has_session()


def test_auth_provider_must_implement_session_methods(remote_profiles):
    class HalfAuth(BaseAuth):
        async def current_user(self):
            return None

    with pytest.raises(TypeError):
        BaseAuth(remote_profiles)
    with pytest.raises(TypeError):
        HalfAuth(remote_profiles)

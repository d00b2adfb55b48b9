"""
Тесты для сборки портала и сквозных сценариев через фасад Portal.
"""

import pytest

from mechanic_sync.core.config import Settings
from mechanic_sync.core.errors import Forbidden, PendingApproval, Unauthenticated
from mechanic_sync.models.request import Contact, Location, Vehicle
from mechanic_sync.models.status import CanonicalStatus
from mechanic_sync.portal import create_portal
from mechanic_sync.services.auth_service import LocalAuth, SupabaseAuth
from mechanic_sync.services.backend_api import PostgrestBackend
from mechanic_sync.services.local_store import DEMO_PASSWORD, LocalBackend


@pytest.fixture
def user_portal(test_settings):
    portal = create_portal(test_settings, session_key="session:user")
    yield portal
    portal.close()


@pytest.fixture
def mechanic_portal(test_settings, user_portal):
    """Вторая сессия (механик) на том же хранилище."""
    portal = create_portal(test_settings, backend=user_portal.backend, session_key="session:mech")
    yield portal
    portal.close()


async def _create_request(portal):
    return await portal.create_request(
        Vehicle(make="Kia", model="Rio", year="2020"),
        "  Brakes squeal.  ",
        Contact(name="Dana", phone="555-0110"),
        Location(address="5 Pier Rd", latitude=59.93, longitude=30.33),
    )


def test_offline_portal_is_seeded(user_portal):
    assert isinstance(user_portal.backend, LocalBackend)
    assert isinstance(user_portal.auth, LocalAuth)
    assert user_portal.backend.store.get("seeded") is True


@pytest.mark.asyncio
async def test_request_flows_from_requester_to_mechanic(user_portal, mechanic_portal):
    """
    Тест: Заявка пользователя видна механику среди открытых, после claim -
    в его назначениях, а не в открытых.
    """
    # Arrange
    await user_portal.sign_in("user@example.com", DEMO_PASSWORD)
    mechanic = await mechanic_portal.sign_in("mech@example.com", DEMO_PASSWORD)
    events = []
    mechanic_portal.subscribe(events.append)

    # Act
    created = await _create_request(user_portal)
    open_before = await mechanic_portal.list_unassigned()
    claimed = await mechanic_portal.claim(created.id)
    open_after = await mechanic_portal.list_unassigned()
    mine = await mechanic_portal.list_my_assignments()
    await mechanic_portal.bus.drain()

    # Assert
    assert created.status is CanonicalStatus.OPEN
    assert created.issue_description == "Brakes squeal."
    assert created.location.has_coordinates
    assert open_before[0].id == created.id
    assert len(open_before) == 2
    assert claimed.assigned_mechanic_id == mechanic.id
    assert created.id not in [r.id for r in open_after]
    assert [r.id for r in mine] == [created.id]
    assert [e.action for e in events] == ["claimed"]

    seen_by_user = await user_portal.get_request(created.id)
    assert seen_by_user.status is CanonicalStatus.ASSIGNED


@pytest.mark.asyncio
async def test_requester_cannot_list_or_claim(user_portal):
    await user_portal.sign_in("user@example.com", DEMO_PASSWORD)
    created = await _create_request(user_portal)

    with pytest.raises(Forbidden):
        await user_portal.list_unassigned()
    with pytest.raises(Forbidden):
        await user_portal.claim(created.id)


@pytest.mark.asyncio
async def test_signed_out_session_is_rejected(user_portal):
    await user_portal.sign_in("user@example.com", DEMO_PASSWORD)
    await user_portal.sign_out()

    assert await user_portal.current_actor() is None
    with pytest.raises(Unauthenticated):
        await _create_request(user_portal)


@pytest.mark.asyncio
async def test_registered_mechanic_waits_for_approval(user_portal):
    """
    Тест: Новый механик получает профиль pending, может править профиль,
    но не видит заявок до одобрения.
    """
    # Act
    actor = await user_portal.register_mechanic(" Ann ", "ann@example.com", "secret", "555-0199", "North")
    updated = await user_portal.update_profile(service_area="North-East")

    # Assert
    assert (actor.role, actor.approval, actor.display_name) == ("mechanic", "pending", "Ann")
    assert updated.service_area == "North-East"
    with pytest.raises(PendingApproval):
        await user_portal.list_unassigned()


@pytest.mark.asyncio
async def test_register_without_session_asks_for_confirmation(user_portal, mocker):
    """
    Тест: Регистрация без сессии (ожидает подтверждения email) дает понятную ошибку.
    """
    mocker.patch.object(user_portal.auth, "sign_up", mocker.AsyncMock())
    mocker.patch.object(user_portal.auth, "has_session", return_value=False)
    mocker.patch.object(
        user_portal.auth, "sign_in", mocker.AsyncMock(side_effect=Unauthenticated("Email not confirmed"))
    )

    with pytest.raises(Unauthenticated) as exc_info:
        await user_portal.register_mechanic("Ann", "ann@example.com", "secret")

    assert "Confirm your email" in exc_info.value.message


def test_portal_bus_starts_with_profile_cache_only(user_portal):
    """
    Тест: Единственный подписчик новой сессии - сброс кэша профилей; внешних
    интеграций портал сам не подключает.
    """
    assert user_portal.bus._handlers == [user_portal.profiles.on_change]


def test_online_portal_uses_rest_backend():
    """
    Тест: При заданных URL и ключе используется REST-бэкенд с токеном сессии.
    """
    settings = Settings(
        _env_file=None,
        backend_url="https://db.example.com",
        backend_key="anon-key",
    )

    portal = create_portal(settings)
    portal.auth._access_token = "session-token"

    assert isinstance(portal.backend, PostgrestBackend)
    assert isinstance(portal.auth, SupabaseAuth)
    assert portal.backend._headers()["Authorization"] == "Bearer session-token"
    assert portal.connect_remote() is False


def test_local_change_feed_connects(user_portal):
    assert user_portal.connect_remote() is True
    assert set(user_portal.bus.remote_tables) == {"requests", "profiles"}

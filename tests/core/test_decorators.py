"""
Тесты для декоратора @require_role.
"""

import pytest

from mechanic_sync.core.decorators import require_role
from mechanic_sync.core.errors import Forbidden, PendingApproval, Unauthenticated
from mechanic_sync.models.user import Actor
from mechanic_sync.services.session_gate import SessionGate

# --- Фикстуры для подготовки тестового окружения ---


class DummyService:
    """Сервис с методами, защищенными декоратором."""

    def __init__(self, gate: SessionGate, handler) -> None:
        self.gate = gate
        self.handler = handler

    @require_role("admin")
    async def admin_only(self, value, *, actor):
        return await self.handler(value, actor=actor)

    @require_role("mechanic", "admin", approved=False)
    async def any_staff(self, *, actor):
        return await self.handler(actor=actor)


@pytest.fixture
def auth(mocker):
    """Мок источника пользователя сессии."""
    auth = mocker.Mock()
    auth.current_actor = mocker.AsyncMock()
    return auth


@pytest.fixture
def service(auth, mocker) -> DummyService:
    # Создаем "шпиона" - асинхронную функцию, за которой будем следить
    return DummyService(SessionGate(auth), mocker.AsyncMock(return_value="done"))


# --- Тесты ---


@pytest.mark.asyncio
async def test_require_role_success(auth, service):
    """
    Тест: Пользователь имеет необходимую роль, доступ разрешен.
    """
    # Arrange (Подготовка)
    admin_user = Actor(id="100", email="admin@example.com", role="admin")
    auth.current_actor.return_value = admin_user

    # Act (Действие)
    result = await service.admin_only(42)

    # Assert (Проверка)
    assert result == "done"
    # Найденный пользователь передан в метод аргументом actor
    service.handler.assert_awaited_once_with(42, actor=admin_user)


@pytest.mark.asyncio
async def test_require_role_wrong_role(auth, service):
    """
    Тест: У пользователя другая роль, доступ запрещен.
    """
    # Arrange
    auth.current_actor.return_value = Actor(id="200", role="mechanic")

    # Act / Assert
    with pytest.raises(Forbidden):
        await service.admin_only(42)
    # Проверяем, что оригинальный метод НЕ был вызван
    service.handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_require_role_unauthenticated(auth, service):
    """
    Тест: Сессии нет, доступ запрещен.
    """
    auth.current_actor.return_value = None

    with pytest.raises(Unauthenticated):
        await service.admin_only(42)
    service.handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_require_role_pending_approval(auth, service):
    """
    Тест: Неодобренный администратор не проходит проверку одобрения.
    """
    auth.current_actor.return_value = Actor(id="300", role="admin", approval="pending")

    with pytest.raises(PendingApproval):
        await service.admin_only(42)
    service.handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_require_role_without_approval_check(auth, service):
    """
    Тест: approved=False пропускает механика в ожидании одобрения.
    """
    pending = Actor(id="400", role="mechanic", approval="pending")
    auth.current_actor.return_value = pending

    await service.any_staff()

    service.handler.assert_awaited_once_with(actor=pending)

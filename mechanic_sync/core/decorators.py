"""
Декораторы для проверки авторизации и прав доступа.
"""

import logging
from functools import wraps
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


def require_role(*roles: str, approved: bool = True) -> Callable:
    """
    Декоратор для методов сервисов, изменяющих данные.

    Выполняет проверки SessionGate (self.gate) в порядке: сессия, роль,
    одобрение - и передает найденного пользователя в метод аргументом actor.

    Args:
        *roles: Роли, которым разрешен доступ.
        approved: Требовать ли одобренный профиль.

    Returns:
        Декоратор для асинхронного метода с keyword-аргументом actor.
    """

    def decorator(func: Callable[..., Coroutine[Any, Any, Any]]):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            gate = self.gate
            actor = await gate.require_actor()
            gate.require_role(actor, *roles)
            if approved:
                gate.require_approved(actor)
            logger.debug(f"{func.__name__} authorized for {actor.id} ({actor.role}).")
            return await func(self, *args, actor=actor, **kwargs)

        return wrapper

    return decorator

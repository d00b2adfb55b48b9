"""
Проверка сессии, роли и одобрения перед любой записью.

Порядок проверок фиксирован: сессия, роль, одобрение. Так неавторизованный
пользователь никогда не доходит до хранилища.
"""

import logging
from typing import Protocol

from mechanic_sync.core.errors import Forbidden, PendingApproval, Unauthenticated
from mechanic_sync.models.user import Actor

logger = logging.getLogger(__name__)


class ActorSource(Protocol):
    async def current_actor(self) -> Actor | None: ...


class SessionGate:
    def __init__(self, auth: ActorSource) -> None:
        self.auth = auth

    async def require_actor(self) -> Actor:
        actor = await self.auth.current_actor()
        if actor is None:
            logger.warning("Rejected action: no authenticated session.")
            raise Unauthenticated()
        return actor

    def require_role(self, actor: Actor, *roles: str) -> None:
        if actor.role not in roles:
            logger.warning(
                f"Unauthorized access attempt by {actor.id} ({actor.email}). "
                f"User role: '{actor.role}'. Required roles: {roles}"
            )
            raise Forbidden()

    def require_approved(self, actor: Actor) -> None:
        if actor.is_approved:
            return
        logger.warning(f"Actor {actor.id} is not approved (approval='{actor.approval}').")
        if actor.approval == "rejected":
            raise PendingApproval("Your mechanic application was not approved.")
        raise PendingApproval()

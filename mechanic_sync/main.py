"""
Основная точка входа в приложение.

Собирает портал по настройкам окружения, подключает ленту изменений
и сообщает о состоянии: режим работы, активная сессия, открытые заявки.
"""

import asyncio
import logging

from mechanic_sync.core.config import Settings, settings as default_settings
from mechanic_sync.core.logging_config import setup_logging
from mechanic_sync.portal import create_portal

logger = logging.getLogger(__name__)


async def run(settings: Settings | None = None) -> int:
    settings = settings or default_settings
    portal = create_portal(settings)
    try:
        live = portal.connect_remote()
        logger.info(
            f"Portal ready in {'online' if settings.online else 'local'} mode; "
            f"push updates {'enabled' if live else 'disabled'}."
        )

        actor = await portal.current_actor()
        if actor is None:
            logger.info("No active session.")
            return 0

        logger.info(f"Signed in as {actor.signature} ({actor.role}, {actor.approval}).")
        if actor.role == "mechanic" and actor.is_approved:
            open_requests = await portal.list_unassigned()
            mine = await portal.list_my_assignments()
            logger.info(
                f"{len(open_requests)} open request(s), {len(mine)} assigned to you."
            )
        return 0
    finally:
        portal.close()


def main() -> None:
    """Основная функция для запуска."""
    setup_logging(default_settings.log_level)
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()

"""
Тесты для точки входа.
"""

import logging

import pytest

from mechanic_sync.core.logging_config import resolve_level, setup_logging
from mechanic_sync.main import run
from mechanic_sync.portal import create_portal
from mechanic_sync.services.local_store import DEMO_PASSWORD, KeyValueStore


@pytest.mark.asyncio
async def test_run_without_session(test_settings, caplog):
    caplog.set_level(logging.INFO)

    assert await run(test_settings) == 0
    assert "No active session." in caplog.text


@pytest.mark.asyncio
async def test_run_reports_open_requests_for_mechanic(test_settings, tmp_path, caplog):
    """
    Тест: Сохраненная сессия механика в файле хранилища подхватывается при запуске.
    """
    # Arrange
    test_settings.local_store_path = str(tmp_path / "portal.json")

    portal = create_portal(test_settings)
    await portal.sign_in("mech@example.com", DEMO_PASSWORD)
    portal.close()
    caplog.set_level(logging.INFO)

    # Act
    result = await run(test_settings)

    # Assert
    assert result == 0
    assert KeyValueStore(test_settings.local_store_path).get("session")
    assert "1 open request(s), 0 assigned to you." in caplog.text


def test_setup_logging_quiets_network_libraries():
    setup_logging(logging.DEBUG)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("urllib3").level == logging.WARNING


def test_level_names_are_resolved():
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(" Warning ") == logging.WARNING
    assert resolve_level("verbose") == logging.INFO
    assert resolve_level(logging.ERROR) == logging.ERROR

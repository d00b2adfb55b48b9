"""
Общие фикстуры тестов: локальное хранилище, пользователи и сборка TransitionEngine.
"""

import pytest

from mechanic_sync.core.config import Settings
from mechanic_sync.models.user import Actor
from mechanic_sync.services.event_bus import ChangeBus
from mechanic_sync.services.local_store import LEGACY_SCHEMA, LocalBackend
from mechanic_sync.services.notes_service import NotesManager
from mechanic_sync.services.request_repository import RequestRepository
from mechanic_sync.services.session_gate import SessionGate
from mechanic_sync.services.transition_engine import TransitionEngine


class StaticAuth:
    """Источник пользователя сессии с заранее заданным Actor."""

    def __init__(self, actor: Actor | None = None) -> None:
        self.actor = actor

    async def current_actor(self) -> Actor | None:
        return self.actor


@pytest.fixture
def test_settings() -> Settings:
    """Настройки офлайн-режима, независимо от окружения."""
    return Settings(
        _env_file=None,
        backend_url=None,
        backend_key=None,
        local_store_path=None,
    )


@pytest.fixture
def backend() -> LocalBackend:
    return LocalBackend()


@pytest.fixture
def legacy_backend() -> LocalBackend:
    return LocalBackend(schema=LEGACY_SCHEMA)


@pytest.fixture
def mechanic() -> Actor:
    return Actor(id="mech-1", email="mech1@example.com", role="mechanic")


@pytest.fixture
def other_mechanic() -> Actor:
    return Actor(id="mech-2", email="mech2@example.com", role="mechanic")


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", email="admin@example.com", role="admin")


@pytest.fixture
def requester() -> Actor:
    return Actor(id="user-1", email="user@example.com", role="user")


@pytest.fixture
def make_engine(test_settings):
    """Фабрика TransitionEngine для заданного хранилища и пользователя сессии."""

    def factory(backend, actor: Actor | None) -> TransitionEngine:
        notes = NotesManager(backend, test_settings)
        repository = RequestRepository(backend, notes, test_settings)
        gate = SessionGate(StaticAuth(actor))
        return TransitionEngine(backend, gate, repository, notes, ChangeBus(), test_settings)

    return factory


async def insert_open_request(backend: LocalBackend, **overrides) -> str:
    """Кладет в хранилище открытую заявку предпочтительной формы и возвращает ее id."""
    row = {
        "user_id": "user-1",
        "user_email": "user@example.com",
        "vehicle": {"make": "Toyota", "model": "Corolla", "year": "2016", "plate": "ABC-123"},
        "issue_description": "Battery is dead.",
        "contact": {"name": "Sam", "phone": "555-0101"},
        "status": "open",
        "assigned_mechanic_id": None,
        "notes": [],
        **overrides,
    }
    stored = await backend.insert("requests", row)
    return stored["id"]


async def insert_legacy_request(backend: LocalBackend, **overrides) -> str:
    """Открытая заявка в форме legacy-развертывания (плоские колонки, 'Submitted')."""
    row = {
        "user_id": "user-1",
        "user_email": "user@example.com",
        "vehicle_make": "Ford",
        "vehicle_model": "Focus",
        "vehicle_year": "2012",
        "issue_description": "Flat tire.",
        "contact_name": "Kim",
        "status": "Submitted",
        "mechanic_id": None,
        "notes": [],
        **overrides,
    }
    stored = await backend.insert("requests", row)
    return stored["id"]

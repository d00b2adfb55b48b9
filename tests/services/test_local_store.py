"""
Тесты для локального хранилища (офлайн/демо-режим).
"""

import pytest

from mechanic_sync.services.local_store import (
    DEMO_PASSWORD,
    LEGACY_SCHEMA,
    KeyValueStore,
    LocalBackend,
)
from mechanic_sync.services.storage import StorageError, eq, is_null


def test_key_value_store_persists_to_file(tmp_path):
    """
    Тест: Данные переживают пересоздание хранилища с тем же файлом.
    """
    path = tmp_path / "store.json"
    store = KeyValueStore(path)
    store.set("session", {"user_id": "u1"})

    reopened = KeyValueStore(path)

    assert reopened.get("session") == {"user_id": "u1"}
    reopened.delete("session")
    assert KeyValueStore(path).get("session") is None


def test_key_value_store_returns_copies():
    store = KeyValueStore()
    store.set("users", [{"id": "u1"}])

    store.get("users").append({"id": "u2"})

    assert store.get("users") == [{"id": "u1"}]


def test_unreadable_file_starts_empty(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")

    assert KeyValueStore(path).get("tables") is None


@pytest.mark.asyncio
async def test_insert_and_select_with_order(backend):
    await backend.insert("requests", {"id": "a", "created_at": "2024-01-01T00:00:00+00:00", "status": "open"})
    await backend.insert("requests", {"id": "b", "created_at": "2024-02-01T00:00:00+00:00", "status": "open"})

    rows = await backend.select("requests", [eq("status", "open")], order_by="created_at", descending=True)

    assert [r["id"] for r in rows] == ["b", "a"]
    assert len(await backend.select("requests", limit=1)) == 1


@pytest.mark.asyncio
async def test_insert_generates_id_and_created_at(backend):
    row = await backend.insert("requests", {"status": "open"})

    assert row["id"]
    assert row["created_at"]


@pytest.mark.asyncio
async def test_unknown_column_and_table_errors(legacy_backend):
    """
    Тест: Отсутствующие колонка и таблица дают коды 42703 и 42P01.
    """
    with pytest.raises(StorageError) as column_error:
        await legacy_backend.select("requests", [is_null("assigned_mechanic_id")])
    with pytest.raises(StorageError) as table_error:
        await legacy_backend.insert("request_notes", {"text": "hi"})

    assert column_error.value.code == "42703"
    assert table_error.value.code == "42P01"


@pytest.mark.asyncio
async def test_conditional_update_only_touches_matching_rows(backend):
    await backend.insert("requests", {"id": "a", "status": "open", "assigned_mechanic_id": None})

    first = await backend.update(
        "requests", {"assigned_mechanic_id": "m1"}, [eq("id", "a"), is_null("assigned_mechanic_id")]
    )
    second = await backend.update(
        "requests", {"assigned_mechanic_id": "m2"}, [eq("id", "a"), is_null("assigned_mechanic_id")]
    )

    assert first[0]["assigned_mechanic_id"] == "m1"
    assert second == []
    assert (await backend.select("requests"))[0]["assigned_mechanic_id"] == "m1"


@pytest.mark.asyncio
async def test_change_feed_and_unsubscribe(backend):
    """
    Тест: Подписчики ленты получают insert/update, после отписки - ничего.
    """
    changes = []
    unsubscribe = backend.subscribe_changes("requests", changes.append)

    await backend.insert("requests", {"id": "a", "status": "open"})
    await backend.update("requests", {"status": "assigned"}, [eq("id", "a")])
    unsubscribe()
    await backend.update("requests", {"status": "cancelled"}, [eq("id", "a")])

    assert [c.action for c in changes] == ["insert", "update"]
    assert changes[1].old["status"] == "open"
    assert changes[1].new["status"] == "assigned"


def test_seed_data_is_written_once():
    """
    Тест: Демо-данные создаются один раз и отфильтрованы по схеме.
    """
    backend = LocalBackend(schema=LEGACY_SCHEMA)

    backend.ensure_seed_data()
    backend.ensure_seed_data()

    users = backend.store.get("users")
    tables = backend.store.get("tables")
    assert len(users) == 3
    assert all(u["password"] == DEMO_PASSWORD for u in users)
    assert len(tables["requests"]) == 1
    assert "vehicle" not in tables["requests"][0]
    assert tables["requests"][0]["vehicle_make"] == "Toyota"
    assert "approved" not in tables["profiles"][1]

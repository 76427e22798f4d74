from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from fakes import NOW
from pagerbuddy.adapters.sqlite_storage import SQLiteStorage
from pagerbuddy.core.directory import build_directory
from pagerbuddy.core.errors import StorageError
from pagerbuddy.core.models import Alert, AlertSource, HistoryEntry, InformationContent, SourceKind, UserResponse

CONFIG = {
    "units": [{"code": 25123, "name": "Engine 1"}],
    "sources": [{"id": "north", "kind": "hardware"}, {"id": "katsys", "kind": "katsys"}],
    "response_options": [
        {"id": 1, "label": "5 min", "type": "confirm", "eta_minutes": 5},
        {"id": 2, "label": "No", "type": "deny"},
    ],
    "users": [{"id": "alice", "name": "Alice", "telegram_name": "alice"}],
    "groups": [
        {"id": "engine", "name": "Engine", "units": [25123], "members": ["alice"],
         "response_configuration": {"allow_responses": True, "options": [1, 2]}}
    ],
}


def _storage(tmp_path):
    directory = build_directory(CONFIG)
    storage = SQLiteStorage(str(tmp_path / "pagerbuddy.db"), directory)
    storage.init_db()
    return storage, directory


def _alert(directory, offset=0):
    return Alert(
        unit=directory.unit_for_code(25123),
        timestamp=NOW + timedelta(seconds=offset),
        information_content=InformationContent.ID,
        sources=[directory.source("north")],
    )


def test_history_window_and_purge(tmp_path) -> None:
    storage, _ = _storage(tmp_path)

    async def scenario():
        await storage.add_history(HistoryEntry(25123, InformationContent.ID, NOW - timedelta(minutes=10)))
        await storage.add_history(HistoryEntry(25123, InformationContent.COMPLETE, NOW))
        await storage.add_history(HistoryEntry(99, InformationContent.ID, NOW))
        recent = await storage.get_history(25123, NOW - timedelta(minutes=5))
        removed = await storage.purge_history(NOW - timedelta(minutes=5))
        remaining = await storage.get_history(25123, NOW - timedelta(hours=1))
        return recent, removed, remaining

    recent, removed, remaining = asyncio.run(scenario())

    assert [entry.information_content for entry in recent] == [InformationContent.COMPLETE]
    assert removed == 1
    assert len(remaining) == 1


def test_save_find_and_update_alert(tmp_path) -> None:
    storage, directory = _storage(tmp_path)

    async def scenario():
        alert = await storage.save_alert(_alert(directory))
        alert.keyword = "#R9012#KTP"
        alert.information_content = InformationContent.COMPLETE
        alert.add_source(directory.source("katsys"))
        alert.add_source(directory.source("north"))
        await storage.save_alert(alert)
        found = await storage.find_alert(25123, NOW - timedelta(minutes=5))
        missing = await storage.find_alert(25123, NOW + timedelta(minutes=1))
        count = await storage.count_alerts(25123)
        return alert, found, missing, count

    alert, found, missing, count = asyncio.run(scenario())

    assert alert.alert_id == 1
    assert found.alert_id == 1
    assert found.keyword == "#R9012#KTP"
    assert found.information_content is InformationContent.COMPLETE
    assert [source.source_id for source in found.sources] == ["north", "katsys"]
    assert found.timestamp == NOW
    assert missing is None
    assert count == 1


def test_alert_response_is_unique_per_group(tmp_path) -> None:
    storage, directory = _storage(tmp_path)
    group = directory.group("engine")

    async def scenario():
        alert = await storage.save_alert(_alert(directory))
        first = await storage.get_or_create_alert_response(alert, group)
        second = await storage.get_or_create_alert_response(alert, group)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.alert_response_id == second.alert_response_id


def test_user_response_is_replaced(tmp_path) -> None:
    storage, directory = _storage(tmp_path)
    group = directory.group("engine")
    alice = directory.user("alice")

    async def scenario():
        alert = await storage.save_alert(_alert(directory))
        alert_response = await storage.get_or_create_alert_response(alert, group)
        await storage.save_user_response(alert_response, UserResponse(alice, directory.option(1), "chat", NOW))
        await storage.save_user_response(
            alert_response, UserResponse(alice, directory.option(2), "chat", NOW + timedelta(seconds=5))
        )
        return await storage.get_alert_response(alert_response.alert_response_id)

    loaded = asyncio.run(scenario())

    assert len(loaded.responses) == 1
    assert loaded.responses[0].option.option_id == 2
    assert loaded.group is group
    assert loaded.alert.unit.code == 25123


def test_chat_migrations_are_persisted(tmp_path) -> None:
    storage, _ = _storage(tmp_path)

    asyncio.run(storage.save_chat_migration("-100", "-100200"))
    asyncio.run(storage.save_chat_migration("-100", "-100300"))

    assert storage.load_chat_migrations() == [("-100", "-100300")]


def test_unknown_source_rows_are_skipped(tmp_path) -> None:
    storage, directory = _storage(tmp_path)
    stranger = AlertSource("removed-site", SourceKind.HARDWARE)

    async def scenario():
        alert = _alert(directory)
        alert.add_source(stranger)
        saved = await storage.save_alert(alert)
        return await storage.get_alert(saved.alert_id)

    loaded = asyncio.run(scenario())

    assert [source.source_id for source in loaded.sources] == ["north"]


def test_alert_and_history_are_saved_together(tmp_path) -> None:
    storage, directory = _storage(tmp_path)

    async def scenario():
        alert = await storage.save_alert_with_history(
            _alert(directory), HistoryEntry(25123, InformationContent.ID, NOW)
        )
        history = await storage.get_history(25123, NOW - timedelta(minutes=5))
        return alert, history

    alert, history = asyncio.run(scenario())

    assert alert.alert_id == 1
    assert [entry.alert_id for entry in history] == [1]


def test_failed_history_write_rolls_back_alert(tmp_path) -> None:
    storage, directory = _storage(tmp_path)
    with sqlite3.connect(str(tmp_path / "pagerbuddy.db")) as conn:
        conn.execute("DROP TABLE alert_history")
    alert = _alert(directory)

    with pytest.raises(StorageError):
        asyncio.run(storage.save_alert_with_history(alert, HistoryEntry(25123, InformationContent.ID, NOW)))

    assert alert.alert_id is None
    assert asyncio.run(storage.count_alerts(25123)) == 0


def test_history_table_without_alert_column_is_upgraded(tmp_path) -> None:
    path = str(tmp_path / "pagerbuddy.db")
    with sqlite3.connect(path) as conn:
        conn.execute(
            "CREATE TABLE alert_history (id INTEGER PRIMARY KEY AUTOINCREMENT, unit_code INTEGER NOT NULL,"
            " information_content INTEGER NOT NULL, timestamp TEXT NOT NULL)"
        )
    storage = SQLiteStorage(path, build_directory(CONFIG))
    storage.init_db()

    asyncio.run(storage.add_history(HistoryEntry(25123, InformationContent.ID, NOW, alert_id=3)))
    history = asyncio.run(storage.get_history(25123, NOW - timedelta(minutes=5)))

    assert [entry.alert_id for entry in history] == [3]

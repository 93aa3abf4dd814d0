from __future__ import annotations

from pathlib import Path

import pytest
from currency.storage import InMemoryKeyValueStore, SqliteKeyValueStore

pytestmark = pytest.mark.unit


@pytest.fixture
def sqlite_store(tmp_path: Path):
    store = SqliteKeyValueStore(database_path=str(tmp_path / "nested" / "currency.sqlite3"))
    store.connect()
    yield store
    store.close()


def test_sqlite_store_returns_none_for_missing_key(sqlite_store: SqliteKeyValueStore) -> None:
    assert sqlite_store.get("exchange_rates_cache") is None


def test_sqlite_store_overwrites_existing_value(sqlite_store: SqliteKeyValueStore) -> None:
    sqlite_store.set("exchange_rates_cache", '{"rates": {}}')
    sqlite_store.set("exchange_rates_cache", '{"rates": {"USD": 1}}')

    assert sqlite_store.get("exchange_rates_cache") == '{"rates": {"USD": 1}}'


def test_sqlite_store_survives_reconnect(tmp_path: Path) -> None:
    database_path = str(tmp_path / "currency.sqlite3")
    first = SqliteKeyValueStore(database_path=database_path)
    first.connect()
    first.set("exchange_rates_cache", "payload")
    first.close()

    second = SqliteKeyValueStore(database_path=database_path)
    second.connect()
    try:
        assert second.get("exchange_rates_cache") == "payload"
    finally:
        second.close()


def test_sqlite_store_requires_connection(tmp_path: Path) -> None:
    store = SqliteKeyValueStore(database_path=str(tmp_path / "currency.sqlite3"))

    with pytest.raises(RuntimeError):
        store.get("exchange_rates_cache")


def test_in_memory_store_copies_initial_values() -> None:
    initial = {"exchange_rates_cache": "payload"}
    store = InMemoryKeyValueStore(initial)
    store.set("exchange_rates_cache", "replaced")

    assert initial == {"exchange_rates_cache": "payload"}
    assert store.get("exchange_rates_cache") == "replaced"

"""
Tests for the remote relational store: schema, error mapping, pooling and helpers.
"""

import asyncio
import sqlite3

import pytest

from inkdoodle.DB.remote_store import (
    DuplicateKeyError,
    ForeignKeyError,
    NotNullError,
    RemoteConnectionError,
    RemoteStore,
    RemoteStoreError,
    decode_row,
    translate_error,
)


async def _insert_project(store, code="PRJ-0001-000001", creator_id=1, title="Novel"):
    await store.execute(
        "INSERT INTO projects (id, code, title, creator_id) VALUES (?, ?, ?, ?)",
        (code, "1", title, creator_id))


class TestTranslateError:
    """Driver exceptions map onto the store's taxonomy."""

    @pytest.mark.parametrize("error,expected", [
        (sqlite3.IntegrityError("UNIQUE constraint failed: projects.id"), DuplicateKeyError),
        (sqlite3.IntegrityError("FOREIGN KEY constraint failed"), ForeignKeyError),
        (sqlite3.IntegrityError("NOT NULL constraint failed: chapters.project_id"), NotNullError),
        (sqlite3.OperationalError("database is locked"), RemoteConnectionError),
        (sqlite3.OperationalError("unable to open database file"), RemoteConnectionError),
        (sqlite3.OperationalError("no such column: nope"), RemoteStoreError),
    ])
    def test_mapping(self, error, expected):
        translated = translate_error(error, "SELECT 1")
        assert type(translated) is expected
        assert translated.statement == "SELECT 1"

    def test_duplicate_message(self):
        translated = translate_error(sqlite3.IntegrityError("UNIQUE constraint failed: notes.id"))
        assert "duplicate key value" in str(translated)


class TestDecodeRow:

    def test_none(self):
        assert decode_row(None) is None


@pytest.mark.asyncio
class TestRemoteStore:
    """Async API against a file-backed store."""

    async def test_schema_tables_exist(self, remote_store):
        rows = await remote_store.fetch_all("SELECT name FROM sqlite_master WHERE type = 'table'")
        names = {row["name"] for row in rows}
        assert {"creators", "projects", "chapters", "notes", "refs", "lore", "timelines", "prefs"} <= names

    async def test_get_or_create_creator(self, remote_store):
        first = await remote_store.get_or_create_creator("Writer@Example.com", "Writer")
        again = await remote_store.get_or_create_creator("writer@example.com")
        assert first["id"] == again["id"] == 1
        assert first["email"] == "writer@example.com"
        assert first["is_active"] is True

    async def test_get_or_create_creator_rejects_bad_email(self, remote_store):
        with pytest.raises(ValueError):
            await remote_store.get_or_create_creator("not-an-email")

    async def test_duplicate_insert_raises(self, remote_store, creator_id):
        await _insert_project(remote_store)
        with pytest.raises(DuplicateKeyError):
            await _insert_project(remote_store)

    async def test_foreign_keys_are_enforced(self, remote_store, creator_id):
        with pytest.raises(ForeignKeyError):
            await remote_store.execute(
                "INSERT INTO chapters (id, code, project_id, creator_id) VALUES (?, ?, ?, ?)",
                ("CHP-0001-000001", "1", "PRJ-9999-999999", creator_id))

    async def test_project_with_children_cannot_be_deleted_first(self, remote_store, creator_id):
        await _insert_project(remote_store)
        await remote_store.execute(
            "INSERT INTO notes (id, code, project_id, creator_id) VALUES (?, ?, ?, ?)",
            ("NT-0001-000001", "1", "PRJ-0001-000001", creator_id))
        result = await remote_store.try_execute("DELETE FROM projects WHERE id = ?", ("PRJ-0001-000001",))
        assert result.ok is False
        assert isinstance(result.error, ForeignKeyError)

    async def test_try_execute_reports_rowcount(self, remote_store, creator_id):
        await _insert_project(remote_store)
        result = await remote_store.try_execute(
            "UPDATE projects SET title = ? WHERE id = ?", ("Renamed", "PRJ-0001-000001"))
        assert result.ok is True
        assert result.rowcount == 1
        assert await remote_store.fetch_value("SELECT title FROM projects") == "Renamed"

    async def test_json_and_bool_columns_round_trip(self, remote_store, creator_id):
        await _insert_project(remote_store)
        await remote_store.execute(
            "INSERT INTO notes (id, code, project_id, creator_id, tags, pinned) VALUES (?, ?, ?, ?, ?, ?)",
            ("NT-0001-000001", "1", "PRJ-0001-000001", creator_id, ["plot", "todo"], True))
        row = await remote_store.fetch_one("SELECT * FROM notes WHERE id = ?", ("NT-0001-000001",))
        assert row["tags"] == ["plot", "todo"]
        assert row["pinned"] is True

    async def test_transaction_rolls_back_on_error(self, remote_store, creator_id):
        statements = [
            ("INSERT INTO projects (id, code, title, creator_id) VALUES (?, ?, ?, ?)",
             ("PRJ-0001-000001", "1", "A", creator_id)),
            ("INSERT INTO projects (id, code, title, creator_id) VALUES (?, ?, ?, ?)",
             ("PRJ-0001-000001", "1", "B", creator_id)),
        ]
        result = await remote_store.try_execute_transaction(statements)
        assert result.ok is False
        assert isinstance(result.error, DuplicateKeyError)
        assert await remote_store.count("projects") == 0

    async def test_count_with_filter(self, remote_store, creator_id):
        await _insert_project(remote_store, "PRJ-0001-000001")
        await _insert_project(remote_store, "PRJ-0001-000002")
        assert await remote_store.count("projects", {"creator_id": creator_id}) == 2
        assert await remote_store.count("projects", {"creator_id": 42}) == 0

    async def test_count_rejects_unknown_table(self, remote_store):
        with pytest.raises(ValueError):
            await remote_store.count("sqlite_master")

    async def test_prefs(self, remote_store):
        assert await remote_store.get_pref("missing", "fallback") == "fallback"
        await remote_store.set_pref("last_sync_attempt", 123.5)
        await remote_store.set_pref("last_sync_attempt", 456.0)
        assert await remote_store.get_pref("last_sync_attempt") == 456.0

    async def test_pool_is_bounded(self, remote_store):
        await asyncio.gather(*(remote_store.fetch_value("SELECT 1") for _ in range(10)))
        assert len(remote_store._connections) <= remote_store.pool_size

    async def test_closed_store_refuses_queries(self, isolated_temp_dir):
        store = RemoteStore(isolated_temp_dir / "closed.db")
        store.close()
        with pytest.raises(RemoteConnectionError):
            await store.fetch_value("SELECT 1")


def test_memory_store_shares_one_database():
    store = RemoteStore(":memory:", pool_size=2)
    try:
        with store.borrow() as first:
            first.execute("INSERT INTO prefs (key, value) VALUES ('a', '1')")
            first.commit()
            with store.borrow() as second:
                assert second.execute("SELECT value FROM prefs WHERE key = 'a'").fetchone()[0] == "1"
    finally:
        store.close()

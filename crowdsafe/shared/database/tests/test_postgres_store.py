"""Tests for the PostgreSQL adapter (SQL translation and locking flow)."""
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

from crowdsafe.shared.database.postgres_store import PostgresDocumentStore, filter_clause
from crowdsafe.shared.database.store import FieldFilter, NotFoundError, StoreError


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def store(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor

    manager = MagicMock()
    manager.config.database = "crowdsafe_test"

    @contextmanager
    def transaction():
        yield conn

    manager.transaction = transaction
    return PostgresDocumentStore(manager)


class TestFilterClause:
    def test_string_equality_uses_text(self):
        clause, params = filter_clause(FieldFilter("status", "==", "NEW"))
        assert clause == "data->>%s = %s"
        assert params == ["status", "NEW"]

    def test_null_equality(self):
        clause, params = filter_clause(FieldFilter("aiStatus", "==", None))
        assert clause == "data->>%s IS NULL"
        assert params == ["aiStatus"]

    def test_membership_with_null(self):
        clause, params = filter_clause(FieldFilter("aiStatus", "in", (None, "PENDING")))
        assert "ANY" in clause and "IS NULL" in clause
        assert params == ["aiStatus", ["PENDING"], "aiStatus"]

    def test_string_ordering_uses_byte_collation(self):
        clause, params = filter_clause(FieldFilter("expiresAt", "<=", "2026-03-01T12:00:00.000000Z"))
        assert 'COLLATE "C"' in clause
        assert params == ["expiresAt", "2026-03-01T12:00:00.000000Z"]

    def test_numeric_ordering(self):
        clause, _ = filter_clause(FieldFilter("imageWidth", ">", 100))
        assert "::numeric >" in clause


class TestPostgresDocumentStore:
    @pytest.mark.asyncio
    async def test_get_returns_snapshot(self, store, cursor):
        cursor.fetchone.return_value = ({"status": "NEW"},)

        snapshot = await store.get("observations", "obs_1")

        assert snapshot.id == "obs_1"
        assert snapshot.get("status") == "NEW"

    @pytest.mark.asyncio
    async def test_update_locks_row_and_checks_precondition(self, store, cursor):
        cursor.fetchone.return_value = ({"status": "RESOLVED"},)

        applied = await store.update(
            "observations", "obs_1", {"status": "PENDING"}, {"status": ("NEW", "PENDING")}
        )

        assert applied is False
        executed = cursor.execute.call_args_list
        assert len(executed) == 1
        assert "FOR UPDATE" in executed[0].args[0]

    @pytest.mark.asyncio
    async def test_update_writes_when_precondition_holds(self, store, cursor):
        cursor.fetchone.return_value = ({"status": "NEW"},)

        assert await store.update("observations", "obs_1", {"status": "PENDING"}, {"status": ("NEW",)})
        assert cursor.execute.call_args_list[1].args[0].startswith("UPDATE documents")

    @pytest.mark.asyncio
    async def test_update_missing_raises_not_found(self, store, cursor):
        cursor.fetchone.return_value = None

        with pytest.raises(NotFoundError):
            await store.update("observations", "missing", {"status": "PENDING"})

    @pytest.mark.asyncio
    async def test_driver_errors_wrap_as_store_error(self, store, cursor):
        cursor.execute.side_effect = RuntimeError("connection reset")

        with pytest.raises(StoreError):
            await store.get("observations", "obs_1")

"""
Unit tests for tag stores
=========================
MemoryTagStore behaviour and PostgresTagStore against a mocked asyncpg pool.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rfid_relay.core.exceptions import TagStoreError
from rfid_relay.database.postgres_tag_store import PostgresTagStore
from rfid_relay.database.tag_store import MemoryTagStore, TagRecord


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def row(tag_id, name=""):
    return {"tag_id": tag_id, "name": name, "updated_at": NOW}


@pytest.fixture
def conn():
    return AsyncMock()


@pytest.fixture
def pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = False
    pool.close = AsyncMock()
    return pool


@pytest.fixture
def pg_store(pool, mock_logger):
    store = PostgresTagStore("postgresql://relay@localhost/relay", logger=mock_logger)
    store.pool = pool
    return store


class TestTagRecord:

    def test_placeholder_is_not_registered(self):
        assert TagRecord("E1").is_registered is False
        assert TagRecord("E1", name="Box").is_registered is True

    def test_to_dict(self):
        record = TagRecord("E1", name="Box", updated_at=NOW)

        assert record.to_dict() == {
            "id": "E1",
            "name": "Box",
            "registered": True,
            "updated_at": "2024-05-01T12:00:00+00:00",
        }


class TestMemoryTagStore:

    @pytest.mark.asyncio
    async def test_upsert_and_load(self):
        store = MemoryTagStore()

        await store.upsert("E1", "Box1")
        await store.upsert("E1", "Box2")

        records = await store.load_all()
        assert list(records) == ["E1"]
        assert records["E1"].name == "Box2"

    @pytest.mark.asyncio
    async def test_placeholder_never_overwrites(self):
        store = MemoryTagStore({"E1": "Box1"})

        record = await store.insert_placeholder("E1")
        created = await store.insert_placeholder("E2")

        assert record.name == "Box1"
        assert created.name == ""
        assert set(await store.load_all()) == {"E1", "E2"}

    @pytest.mark.asyncio
    async def test_delete_reports_existence(self):
        store = MemoryTagStore({"E1": "Box1"})

        assert await store.delete("E1") is True
        assert await store.delete("E1") is False

    @pytest.mark.asyncio
    async def test_closed_store_raises(self):
        store = MemoryTagStore()
        await store.close()

        with pytest.raises(TagStoreError) as exc_info:
            await store.upsert("E1", "Box1")
        assert exc_info.value.operation == "upsert"
        assert exc_info.value.tag_id == "E1"

        await store.connect()
        await store.upsert("E1", "Box1")

    @pytest.mark.asyncio
    async def test_load_all_returns_copy(self):
        store = MemoryTagStore({"E1": "Box1"})

        records = await store.load_all()
        records.clear()

        assert "E1" in await store.load_all()


class TestPostgresTagStore:

    @pytest.mark.asyncio
    async def test_connect_creates_pool_and_schema(self, pool, conn, mock_logger):
        store = PostgresTagStore("postgresql://relay@localhost/relay", table="tags", logger=mock_logger)

        with patch("rfid_relay.database.postgres_tag_store.asyncpg.create_pool",
                   new=AsyncMock(return_value=pool)) as create_pool:
            await store.connect()
            await store.connect()

        create_pool.assert_awaited_once()
        assert create_pool.call_args.kwargs["max_size"] == 5
        assert "CREATE TABLE IF NOT EXISTS tags" in conn.execute.call_args[0][0]
        assert store.pool is pool

    @pytest.mark.asyncio
    async def test_connect_failure_wrapped(self, mock_logger):
        store = PostgresTagStore("postgresql://relay@localhost/relay", logger=mock_logger)

        with patch("rfid_relay.database.postgres_tag_store.asyncpg.create_pool",
                   new=AsyncMock(side_effect=OSError("connection refused"))):
            with pytest.raises(TagStoreError) as exc_info:
                await store.connect()

        assert exc_info.value.operation == "connect"
        assert store.pool is None

    @pytest.mark.asyncio
    async def test_operations_before_connect_raise(self, mock_logger):
        store = PostgresTagStore("postgresql://relay@localhost/relay", logger=mock_logger)

        with pytest.raises(TagStoreError):
            await store.load_all()
        with pytest.raises(TagStoreError):
            await store.upsert("E1", "Box")

    @pytest.mark.asyncio
    async def test_load_all(self, pg_store, conn):
        conn.fetch.return_value = [row("E1", "Box1"), row("E2")]

        records = await pg_store.load_all()

        assert records["E1"].name == "Box1"
        assert records["E2"].is_registered is False
        assert records["E1"].updated_at == NOW

    @pytest.mark.asyncio
    async def test_upsert_uses_on_conflict_update(self, pg_store, conn):
        conn.fetchrow.return_value = row("E1", "Box1")

        record = await pg_store.upsert("E1", "Box1")

        query, tag_id, name = conn.fetchrow.call_args[0]
        assert "ON CONFLICT (tag_id) DO UPDATE" in query
        assert (tag_id, name) == ("E1", "Box1")
        assert record.name == "Box1"

    @pytest.mark.asyncio
    async def test_placeholder_inserted(self, pg_store, conn):
        conn.fetchrow.return_value = row("E1")

        record = await pg_store.insert_placeholder("E1")

        assert "DO NOTHING" in conn.fetchrow.call_args[0][0]
        assert conn.fetchrow.await_count == 1
        assert record.name == ""

    @pytest.mark.asyncio
    async def test_placeholder_returns_existing_record(self, pg_store, conn):
        conn.fetchrow.side_effect = [None, row("E1", "Box1")]

        record = await pg_store.insert_placeholder("E1")

        assert conn.fetchrow.await_count == 2
        assert conn.fetchrow.call_args[0][0].lstrip().startswith("SELECT")
        assert record.name == "Box1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, expected", [("DELETE 1", True), ("DELETE 0", False)])
    async def test_delete(self, pg_store, conn, status, expected):
        conn.execute.return_value = status

        assert await pg_store.delete("E1") is expected

    @pytest.mark.asyncio
    async def test_backend_error_wrapped(self, pg_store, conn):
        conn.fetchrow.side_effect = OSError("connection reset")

        with pytest.raises(TagStoreError) as exc_info:
            await pg_store.upsert("E1", "Box1")

        assert exc_info.value.operation == "upsert"
        assert "connection reset" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, pg_store, pool):
        await pg_store.close()
        await pg_store.close()

        pool.close.assert_awaited_once()
        assert pg_store.pool is None

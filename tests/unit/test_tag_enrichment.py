"""
Unit tests for TagEnrichmentService
===================================
Cache loading, enrichment of read results, set-name round trips and the
behaviour when the tag store fails.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from rfid_relay.api.tag_enrichment import TagEnrichmentService
from rfid_relay.core.exceptions import InvalidTagNameError, TagStoreError
from rfid_relay.database.tag_store import MemoryTagStore


@pytest.fixture
def failing_store():
    store = AsyncMock()
    store.load_all.side_effect = TagStoreError("load_all", "connection refused")
    store.upsert.side_effect = TagStoreError("upsert", "connection refused")
    store.delete.side_effect = TagStoreError("delete", "connection refused")
    store.insert_placeholder.side_effect = TagStoreError("insert_placeholder", "connection refused")
    return store


class TestLoadAll:

    @pytest.mark.asyncio
    async def test_loads_cache_from_store(self, mock_logger):
        store = MemoryTagStore({"E1": "Box1", "E2": ""})
        service = TagEnrichmentService(store, logger=mock_logger)

        count = await service.load_all()

        assert count == 2
        assert service.get("E1").name == "Box1"
        assert service.degraded is False

    @pytest.mark.asyncio
    async def test_store_failure_starts_degraded_with_empty_cache(self, failing_store, mock_logger):
        service = TagEnrichmentService(failing_store, logger=mock_logger)

        count = await service.load_all()

        assert count == 0
        assert service.degraded is True
        assert service.cache_size() == 0
        mock_logger.error.assert_called_once()


class TestEnrich:

    @pytest.mark.asyncio
    async def test_unknown_tags_are_new_and_registered(self, tag_enrichment, tag_store):
        result = {"type": "rfid_result", "tags": [{"id": "E1", "rssi": -40}, {"id": "E2", "rssi": -55}]}

        enriched = await tag_enrichment.enrich(result)

        assert [t["nameState"] for t in enriched["tags"]] == ["new", "new"]
        assert [t["name"] for t in enriched["tags"]] == ["", ""]
        await tag_enrichment.drain()
        stored = await tag_store.load_all()
        assert set(stored) == {"E1", "E2"}
        assert all(record.name == "" for record in stored.values())

    @pytest.mark.asyncio
    async def test_known_tag_gets_name_and_existing(self, tag_enrichment):
        await tag_enrichment.set_name("E1", "Alice")

        enriched = await tag_enrichment.enrich({"type": "rfid_result", "tags": [{"id": "E1"}]})

        assert enriched["tags"][0]["name"] == "Alice"
        assert enriched["tags"][0]["nameState"] == "existing"

    @pytest.mark.asyncio
    async def test_cleared_name_reads_as_new_again(self, tag_enrichment):
        await tag_enrichment.set_name("E1", "Alice")
        await tag_enrichment.set_name("E1", "")

        enriched = await tag_enrichment.enrich({"type": "rfid_result", "tags": [{"id": "E1"}]})

        assert enriched["tags"][0]["name"] == ""
        assert enriched["tags"][0]["nameState"] == "new"

    @pytest.mark.asyncio
    async def test_seen_placeholder_is_existing_on_next_read(self, tag_enrichment):
        await tag_enrichment.enrich({"type": "rfid_result", "tags": [{"id": "E1"}]})

        enriched = await tag_enrichment.enrich({"type": "rfid_result", "tags": [{"id": "E1"}]})

        assert enriched["tags"][0]["nameState"] == "existing"
        assert enriched["tags"][0]["name"] == ""

    @pytest.mark.asyncio
    async def test_duplicate_id_in_one_result_registered_once(self, tag_store, mock_logger):
        store = AsyncMock(wraps=tag_store)
        service = TagEnrichmentService(store, logger=mock_logger)

        enriched = await service.enrich({"tags": [{"id": "E1"}, {"id": "E1"}]})

        assert [t["nameState"] for t in enriched["tags"]] == ["new", "new"]
        await service.drain()
        store.insert_placeholder.assert_awaited_once_with("E1")

    @pytest.mark.asyncio
    async def test_epc_field_used_when_id_missing(self, tag_enrichment):
        await tag_enrichment.set_name("E9", "Pallet")

        enriched = await tag_enrichment.enrich({"tags": [{"epc": "E9"}]})

        assert enriched["tags"][0]["name"] == "Pallet"

    @pytest.mark.asyncio
    async def test_existing_record_never_overwritten(self, mock_logger):
        store = MemoryTagStore({"E1": "Box1"})
        service = TagEnrichmentService(store, logger=mock_logger)
        # cache deliberately not loaded: the store still holds the name
        await service.enrich({"tags": [{"id": "E1"}]})
        await service.drain()

        stored = await store.load_all()
        assert stored["E1"].name == "Box1"

    @pytest.mark.asyncio
    async def test_auto_register_disabled(self, tag_store, mock_logger):
        service = TagEnrichmentService(tag_store, auto_register=False, logger=mock_logger)

        enriched = await service.enrich({"tags": [{"id": "E1"}]})

        assert enriched["tags"][0]["nameState"] == "new"
        assert await tag_store.load_all() == {}
        assert service.get("E1") is None

    @pytest.mark.asyncio
    async def test_input_result_not_mutated(self, tag_enrichment):
        result = {"type": "rfid_result", "count": 1, "tags": [{"id": "E1", "rssi": -40}]}

        enriched = await tag_enrichment.enrich(result)

        assert "name" not in result["tags"][0]
        assert enriched["count"] == 1
        assert enriched["tags"][0]["rssi"] == -40

    @pytest.mark.asyncio
    async def test_result_without_tags_passes_through(self, tag_enrichment):
        enriched = await tag_enrichment.enrich({"type": "rfid_result", "count": 0})

        assert enriched == {"type": "rfid_result", "count": 0}

    @pytest.mark.asyncio
    async def test_store_failure_degrades_and_retries_later(self, failing_store, mock_logger):
        service = TagEnrichmentService(failing_store, logger=mock_logger)

        enriched = await service.enrich({"tags": [{"id": "E1"}]})

        assert enriched["tags"][0] == {"id": "E1", "name": "", "nameState": "new"}
        await service.drain()
        assert service.get("E1") is None

        await service.enrich({"tags": [{"id": "E1"}]})
        await service.drain()
        assert failing_store.insert_placeholder.await_count == 2

    @pytest.mark.asyncio
    async def test_slow_store_does_not_hold_back_result(self, mock_logger):
        class SlowStore(MemoryTagStore):
            async def insert_placeholder(self, tag_id):
                await asyncio.sleep(1.0)
                return await super().insert_placeholder(tag_id)

        store = SlowStore()
        service = TagEnrichmentService(store, logger=mock_logger)

        started = time.monotonic()
        enriched = await service.enrich({"tags": [{"id": "E1"}]})

        assert time.monotonic() - started < 0.5
        assert enriched["tags"][0]["nameState"] == "new"
        assert service.get_stats()["pending_registrations"] == 1

        await service.drain()
        assert "E1" in await store.load_all()
        assert service.get_stats()["pending_registrations"] == 0

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels_stuck_insert(self, mock_logger):
        class StuckStore(MemoryTagStore):
            async def insert_placeholder(self, tag_id):
                await asyncio.Event().wait()

        service = TagEnrichmentService(StuckStore(), logger=mock_logger)
        await service.enrich({"tags": [{"id": "E1"}]})

        cancelled = await service.drain(timeout=0.05)

        assert cancelled == 1
        assert service.get_stats()["pending_registrations"] == 0
        assert mock_logger.warning.call_args[0][0] == "tag_enrichment.registrations_cancelled"


class TestSetName:

    @pytest.mark.asyncio
    async def test_name_is_stripped_and_stored(self, tag_enrichment, tag_store):
        canonical = await tag_enrichment.set_name("E1", "  Box1  ")

        assert canonical == "Box1"
        assert (await tag_store.load_all())["E1"].name == "Box1"

    @pytest.mark.asyncio
    async def test_empty_name_deletes(self, tag_enrichment, tag_store):
        await tag_enrichment.set_name("E1", "Box1")

        canonical = await tag_enrichment.set_name("E1", "   ")

        assert canonical is None
        assert tag_enrichment.get("E1") is None
        assert "E1" not in await tag_store.load_all()

    @pytest.mark.asyncio
    async def test_none_name_deletes(self, tag_enrichment):
        await tag_enrichment.set_name("E1", "Box1")

        assert await tag_enrichment.set_name("E1", None) is None
        assert tag_enrichment.get("E1") is None

    @pytest.mark.asyncio
    async def test_too_long_name_rejected(self, tag_enrichment):
        with pytest.raises(InvalidTagNameError):
            await tag_enrichment.set_name("E1", "x" * 41)

        assert tag_enrichment.get("E1") is None

    @pytest.mark.asyncio
    async def test_name_at_limit_accepted(self, tag_enrichment):
        assert await tag_enrichment.set_name("E1", "x" * 40) == "x" * 40

    @pytest.mark.asyncio
    async def test_non_string_name_rejected(self, tag_enrichment):
        with pytest.raises(InvalidTagNameError):
            await tag_enrichment.set_name("E1", 42)

    @pytest.mark.asyncio
    async def test_store_failure_keeps_memory_value(self, failing_store, mock_logger):
        service = TagEnrichmentService(failing_store, logger=mock_logger)

        canonical = await service.set_name("E1", "Box1")

        assert canonical == "Box1"
        assert service.get("E1").name == "Box1"
        assert service.store_failures == 1
        assert mock_logger.error.call_args[0][0] == "tag_enrichment.store_write_failed"

    @pytest.mark.asyncio
    async def test_writes_for_one_tag_reach_store_in_order(self, mock_logger):
        order = []

        class SlowStore(MemoryTagStore):
            async def upsert(self, tag_id, name):
                # the first write is the slowest one
                await asyncio.sleep(0.05 if name == "first" else 0)
                order.append(name)
                return await super().upsert(tag_id, name)

        store = SlowStore()
        service = TagEnrichmentService(store, logger=mock_logger)

        await asyncio.gather(service.set_name("E1", "first"), service.set_name("E1", "second"))

        assert order == ["first", "second"]
        assert (await store.load_all())["E1"].name == "second"
        assert service.get("E1").name == "second"


class TestStats:

    @pytest.mark.asyncio
    async def test_stats(self, tag_enrichment):
        await tag_enrichment.enrich({"tags": [{"id": "E1"}]})
        await tag_enrichment.drain()

        stats = tag_enrichment.get_stats()

        assert stats["cached_records"] == 1
        assert stats["tags_registered"] == 1
        assert stats["results_enriched"] == 1

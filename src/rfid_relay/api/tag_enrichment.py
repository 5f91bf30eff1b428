"""
Tag Enrichment Service
======================
In-memory mirror of the tag store, used to attach display names to read results.

Cache first: every mutation updates the cache synchronously and then issues
the store write. Writes for one tag id are chained so they reach the store in
the order they were issued; writes for different ids run independently.
Store failures never propagate to the realtime path, and placeholder inserts
for newly seen tags run in the background so a slow store never delays a
read result.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..core.exceptions import InvalidTagNameError, TagStoreError
from ..core.logger import StructuredLogger
from ..database.tag_store import TagRecord, TagStore


NAME_STATE_NEW = "new"
NAME_STATE_EXISTING = "existing"


class TagEnrichmentService:
    """Tag display names: cache, enrichment and write-through to the store"""

    def __init__(self,
                 tag_store: TagStore,
                 auto_register: bool = True,
                 name_max_length: int = 40,
                 logger: Optional[StructuredLogger] = None):
        self.tag_store = tag_store
        self.auto_register = auto_register
        self.name_max_length = name_max_length
        self.logger = logger

        self._cache: Dict[str, TagRecord] = {}
        self._pending_writes: Dict[str, asyncio.Task] = {}
        self._pending_registrations: Set[asyncio.Task] = set()
        self.degraded = False

        self.results_enriched = 0
        self.tags_registered = 0
        self.store_failures = 0

    # --- startup ---

    async def load_all(self) -> int:
        """
        Fill the cache from the store. Called once at startup.

        A failing store leaves the cache empty and the service in degraded
        mode; the relay keeps running.
        """
        try:
            records = await self.tag_store.load_all()
        except TagStoreError as e:
            self.degraded = True
            self.store_failures += 1
            if self.logger:
                self.logger.error("tag_enrichment.load_failed", {
                    "error": str(e),
                    "degraded": True
                })
            return 0

        self._cache = dict(records)
        self.degraded = False
        if self.logger:
            self.logger.info("tag_enrichment.cache_loaded", {
                "records": len(self._cache),
                "registered": sum(1 for r in self._cache.values() if r.is_registered)
            })
        return len(self._cache)

    # --- queries ---

    def get(self, tag_id: str) -> Optional[TagRecord]:
        return self._cache.get(tag_id)

    def cache_size(self) -> int:
        return len(self._cache)

    @staticmethod
    def tag_identifier(entry: Dict[str, Any]) -> Optional[str]:
        """Tag id of a result entry: "id", falling back to "epc"."""
        value = entry.get("id")
        if value is None or value == "":
            value = entry.get("epc")
        if value is None or value == "":
            return None
        return str(value)

    # --- enrichment ---

    async def enrich(self, result: Dict[str, Any]) -> Dict[str, Any]:
        """
        Return a copy of a read result with name and nameState on every tag.

        Known ids get their stored name and "existing". Unknown ids get an
        empty name and "new"; with auto_register they are also inserted as
        empty records, without ever touching a record that already exists.
        Those inserts run as background tasks; see drain().
        """
        enriched = dict(result)
        tags = result.get("tags")
        if not isinstance(tags, list):
            return enriched

        enriched_tags = []
        placeholders: List[TagRecord] = []
        seen_new = set()

        for entry in tags:
            if not isinstance(entry, dict):
                enriched_tags.append(entry)
                continue

            tag = dict(entry)
            tag_id = self.tag_identifier(entry)
            record = self._cache.get(tag_id) if tag_id is not None else None

            if tag_id is None:
                tag["name"] = ""
                tag["nameState"] = NAME_STATE_NEW
            elif record is None or tag_id in seen_new:
                tag["name"] = ""
                tag["nameState"] = NAME_STATE_NEW
                if record is None and self.auto_register:
                    placeholder = TagRecord(tag_id=tag_id)
                    self._cache[tag_id] = placeholder
                    placeholders.append(placeholder)
                seen_new.add(tag_id)
            else:
                tag["name"] = record.name
                tag["nameState"] = NAME_STATE_EXISTING

            enriched_tags.append(tag)

        enriched["tags"] = enriched_tags
        self.results_enriched += 1

        for placeholder in placeholders:
            task = asyncio.create_task(self._register_placeholder(placeholder))
            self._pending_registrations.add(task)
            task.add_done_callback(self._pending_registrations.discard)

        return enriched

    async def _register_placeholder(self, placeholder: TagRecord) -> None:
        tag_id = placeholder.tag_id
        try:
            await self._serialized(tag_id, lambda: self.tag_store.insert_placeholder(tag_id))
        except TagStoreError as e:
            self.store_failures += 1
            # Forget the placeholder so the next read retries the insert
            if self._cache.get(tag_id) is placeholder:
                del self._cache[tag_id]
            if self.logger:
                self.logger.warning("tag_enrichment.register_failed", {
                    "tag_id": tag_id,
                    "error": str(e)
                })
            return

        self.tags_registered += 1
        if self.logger:
            self.logger.debug("tag_enrichment.tag_registered", {"tag_id": tag_id})

    async def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for background placeholder inserts to finish.

        Inserts still running after timeout are cancelled.

        Returns:
            Number of inserts cancelled
        """
        pending = list(self._pending_registrations)
        if not pending:
            return 0
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            if self.logger:
                self.logger.warning("tag_enrichment.registrations_cancelled", {
                    "cancelled": len(still_running)
                })
        return len(still_running)

    # --- naming ---

    def normalize_name(self, tag_id: str, name: Any) -> str:
        """Strip a requested name; None means "clear". Raises InvalidTagNameError."""
        if name is None:
            return ""
        if not isinstance(name, str):
            raise InvalidTagNameError(tag_id, f"name must be a string, got {type(name).__name__}")
        canonical = name.strip()
        if len(canonical) > self.name_max_length:
            raise InvalidTagNameError(tag_id, f"name longer than {self.name_max_length} characters")
        return canonical

    async def set_name(self, tag_id: str, name: Any) -> Optional[str]:
        """
        Set or clear the display name of tag_id.

        A non-empty (stripped) name is upserted; an empty one deletes the
        record. The cache keeps the new value even if the store write fails.

        Returns:
            The stored name, or None when the record was removed
        """
        canonical = self.normalize_name(tag_id, name)

        if canonical:
            self._cache[tag_id] = TagRecord(tag_id=tag_id, name=canonical)
            operation = "upsert"
            write = lambda: self.tag_store.upsert(tag_id, canonical)
        else:
            self._cache.pop(tag_id, None)
            operation = "delete"
            write = lambda: self.tag_store.delete(tag_id)

        try:
            await self._serialized(tag_id, write)
        except TagStoreError as e:
            self.store_failures += 1
            if self.logger:
                self.logger.error("tag_enrichment.store_write_failed", {
                    "tag_id": tag_id,
                    "operation": operation,
                    "error": str(e),
                    "kept_in_memory": True
                })

        if self.logger:
            self.logger.info("tag_enrichment.name_set", {
                "tag_id": tag_id,
                "operation": operation,
                "name": canonical
            })
        return canonical or None

    async def _serialized(self, tag_id: str, write: Callable[[], Awaitable[Any]]) -> Any:
        """Run write after any earlier write for the same tag id has finished"""
        previous = self._pending_writes.get(tag_id)
        task = asyncio.create_task(self._run_after(previous, write))
        self._pending_writes[tag_id] = task
        try:
            return await task
        finally:
            if self._pending_writes.get(tag_id) is task:
                del self._pending_writes[tag_id]

    @staticmethod
    async def _run_after(previous: Optional[asyncio.Task], write: Callable[[], Awaitable[Any]]) -> Any:
        if previous is not None and not previous.done():
            # asyncio.wait does not raise the earlier write's failure here
            await asyncio.wait([previous])
        return await write()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "cached_records": len(self._cache),
            "registered_names": sum(1 for r in self._cache.values() if r.is_registered),
            "degraded": self.degraded,
            "auto_register": self.auto_register,
            "results_enriched": self.results_enriched,
            "tags_registered": self.tags_registered,
            "store_failures": self.store_failures,
            "pending_writes": len(self._pending_writes),
            "pending_registrations": len(self._pending_registrations)
        }

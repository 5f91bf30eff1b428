"""
Tag Store Interface
===================
Persistence gateway for tag display names.

The relay keeps its own in-memory mirror (see TagEnrichmentService); a store
only has to provide atomic single-key writes and a bulk load at startup.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..core.exceptions import TagStoreError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TagRecord:
    """Display name persisted for one scanned tag identifier (EPC)."""

    tag_id: str
    name: str = ""
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_registered(self) -> bool:
        """A record with an empty name is a placeholder for a seen but unnamed tag"""
        return bool(self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.tag_id,
            "name": self.name,
            "registered": self.is_registered,
            "updated_at": self.updated_at.isoformat(),
        }


class TagStore(ABC):
    """
    Abstract persistence gateway.

    Every operation raises TagStoreError when the backend fails.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open backend resources (pools, schema)."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources. Safe to call more than once."""
        pass

    @abstractmethod
    async def load_all(self) -> Dict[str, TagRecord]:
        """Return every stored record keyed by tag id."""
        pass

    @abstractmethod
    async def upsert(self, tag_id: str, name: str) -> TagRecord:
        """Insert or replace the name for tag_id."""
        pass

    @abstractmethod
    async def insert_placeholder(self, tag_id: str) -> TagRecord:
        """
        Insert an empty record if tag_id is absent.

        Returns the stored record; an existing record is returned unchanged.
        """
        pass

    @abstractmethod
    async def delete(self, tag_id: str) -> bool:
        """Remove tag_id. Returns True if a record existed."""
        pass


class MemoryTagStore(TagStore):
    """Process-local store used when no database is configured."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._records: Dict[str, TagRecord] = {
            tag_id: TagRecord(tag_id=tag_id, name=name)
            for tag_id, name in (initial or {}).items()
        }
        self._closed = False

    async def connect(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True

    def _ensure_open(self, operation: str, tag_id: Optional[str] = None):
        if self._closed:
            raise TagStoreError(operation, "store is closed", tag_id)

    async def load_all(self) -> Dict[str, TagRecord]:
        self._ensure_open("load_all")
        return dict(self._records)

    async def upsert(self, tag_id: str, name: str) -> TagRecord:
        self._ensure_open("upsert", tag_id)
        record = TagRecord(tag_id=tag_id, name=name)
        self._records[tag_id] = record
        return record

    async def insert_placeholder(self, tag_id: str) -> TagRecord:
        self._ensure_open("insert_placeholder", tag_id)
        existing = self._records.get(tag_id)
        if existing is not None:
            return existing
        record = TagRecord(tag_id=tag_id)
        self._records[tag_id] = record
        return record

    async def delete(self, tag_id: str) -> bool:
        self._ensure_open("delete", tag_id)
        return self._records.pop(tag_id, None) is not None

"""
Database package: persistence gateway for tag display names
"""

from .tag_store import TagRecord, TagStore, MemoryTagStore
from .postgres_tag_store import PostgresTagStore

__all__ = ['TagRecord', 'TagStore', 'MemoryTagStore', 'PostgresTagStore']

"""
PostgreSQL Tag Store
====================
asyncpg-backed persistence gateway for tag display names.

Features:
- Connection pooling (asyncpg)
- Schema bootstrap on connect (CREATE TABLE IF NOT EXISTS)
- Atomic single-key writes via INSERT ... ON CONFLICT
"""

import asyncio
from typing import Any, Dict, Optional

import asyncpg

from .tag_store import TagRecord, TagStore
from ..core.exceptions import TagStoreError
from ..core.logger import StructuredLogger


# asyncpg raises its own hierarchy for server/protocol errors; socket problems surface as OSError
_BACKEND_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


class PostgresTagStore(TagStore):
    """
    Async PostgreSQL tag store.

    Table layout:
        tag_id      TEXT PRIMARY KEY
        name        TEXT NOT NULL DEFAULT ''
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
    """

    def __init__(self,
                 dsn: str,
                 table: str = "tag_records",
                 min_pool_size: int = 1,
                 max_pool_size: int = 5,
                 command_timeout: float = 10.0,
                 logger: Optional[StructuredLogger] = None):
        self.dsn = dsn
        self.table = table
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self.logger = logger
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Initialize connection pool and make sure the table exists"""
        if self.pool is not None:
            return

        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
                server_settings={'timezone': 'UTC'}
            )
            await self.ensure_schema()
        except _BACKEND_ERRORS as e:
            raise TagStoreError("connect", str(e)) from e

        if self.logger:
            self.logger.info("postgres_tag_store.connected", {
                "table": self.table,
                "min_pool_size": self.min_pool_size,
                "max_pool_size": self.max_pool_size
            })

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    tag_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

    async def close(self) -> None:
        """Close connection pool"""
        if self.pool is None:
            return
        pool, self.pool = self.pool, None
        await pool.close()
        if self.logger:
            self.logger.info("postgres_tag_store.closed")

    def _require_pool(self, operation: str, tag_id: Optional[str] = None) -> asyncpg.Pool:
        if self.pool is None:
            raise TagStoreError(operation, "store is not connected", tag_id)
        return self.pool

    @staticmethod
    def _to_record(row: Any) -> TagRecord:
        return TagRecord(tag_id=row["tag_id"], name=row["name"] or "", updated_at=row["updated_at"])

    async def load_all(self) -> Dict[str, TagRecord]:
        pool = self._require_pool("load_all")
        query = f"SELECT tag_id, name, updated_at FROM {self.table}"
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(query)
        except _BACKEND_ERRORS as e:
            raise TagStoreError("load_all", str(e)) from e
        return {row["tag_id"]: self._to_record(row) for row in rows}

    async def upsert(self, tag_id: str, name: str) -> TagRecord:
        pool = self._require_pool("upsert", tag_id)
        query = f"""
            INSERT INTO {self.table} (tag_id, name, updated_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (tag_id) DO UPDATE
            SET name = EXCLUDED.name, updated_at = EXCLUDED.updated_at
            RETURNING tag_id, name, updated_at
        """
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(query, tag_id, name)
        except _BACKEND_ERRORS as e:
            raise TagStoreError("upsert", str(e), tag_id) from e
        return self._to_record(row)

    async def insert_placeholder(self, tag_id: str) -> TagRecord:
        pool = self._require_pool("insert_placeholder", tag_id)
        insert = f"""
            INSERT INTO {self.table} (tag_id, name, updated_at)
            VALUES ($1, '', NOW())
            ON CONFLICT (tag_id) DO NOTHING
            RETURNING tag_id, name, updated_at
        """
        select = f"SELECT tag_id, name, updated_at FROM {self.table} WHERE tag_id = $1"
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(insert, tag_id)
                if row is None:
                    row = await conn.fetchrow(select, tag_id)
        except _BACKEND_ERRORS as e:
            raise TagStoreError("insert_placeholder", str(e), tag_id) from e
        if row is None:
            # Deleted between the two statements
            return TagRecord(tag_id=tag_id)
        return self._to_record(row)

    async def delete(self, tag_id: str) -> bool:
        pool = self._require_pool("delete", tag_id)
        try:
            async with pool.acquire() as conn:
                status = await conn.execute(f"DELETE FROM {self.table} WHERE tag_id = $1", tag_id)
        except _BACKEND_ERRORS as e:
            raise TagStoreError("delete", str(e), tag_id) from e
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return status.split()[-1] != "0"

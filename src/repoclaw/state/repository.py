"""PostgreSQL key-value store for pipeline persistence.

This module implements the KeyValueStore protocol using asyncpg for async
PostgreSQL access. It provides:
- A shared asyncpg pool, opened by connect() and closed by disconnect()
- Atomic transactions for conditional inserts
- Append-only lists ordered by an identity column

Records live in two tables created by ensure_schema():
- kv_records (key TEXT PRIMARY KEY, value JSONB)
- kv_lists (id BIGSERIAL, key TEXT, value JSONB)
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from src.repoclaw.exceptions import StoreError


logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_records (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS kv_lists (
    id BIGSERIAL PRIMARY KEY,
    key TEXT NOT NULL,
    value JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS kv_lists_key_idx ON kv_lists (key, id);
"""


class DatabaseError(StoreError):
    """Raised when a PostgreSQL operation fails."""


def _decode(raw: Any) -> Dict[str, Any]:
    return json.loads(raw) if isinstance(raw, str) else raw


class PostgresKeyValueStore:
    """PostgreSQL implementation of the KeyValueStore protocol.

    Attributes:
        connection_string: postgresql:// DSN.
        min_pool_size: Connections kept open.
        max_pool_size: Upper bound on open connections.

    Example:
        >>> async with PostgresKeyValueStore("postgresql://...") as kv:
        ...     await kv.ensure_schema()
        ...     record = await kv.get("pipeline:pipe_123")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """The open pool.

        Raises:
            DatabaseError: Before connect() or after disconnect().
        """
        if self._pool is None:
            raise DatabaseError("Key-value store is not connected")
        return self._pool

    async def connect(self) -> None:
        """Open the pool. Calling it twice is a no-op.

        Raises:
            DatabaseError: If PostgreSQL is unreachable.
        """
        if self._pool is not None:
            logger.debug("Key-value pool already open")
            return

        try:
            logger.info(
                "Opening key-value pool",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("Key-value pool open")
        except Exception as e:
            logger.error(
                "Key-value pool could not connect",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Cannot reach key-value database: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        """Close the pool if it is open."""
        if self._pool is not None:
            logger.info("Closing key-value pool")
            await self._pool.close()
            self._pool = None
            logger.debug("Key-value pool closed")

    async def __aenter__(self) -> "PostgresKeyValueStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def ensure_schema(self) -> None:
        """Create the key-value tables if they do not exist."""
        try:
            async with self._transaction() as conn:
                await conn.execute(SCHEMA_SQL)
        except Exception as e:
            raise DatabaseError(
                f"Failed to create key-value schema: {e}",
                original_error=e,
            ) from e

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.pool.acquire() as conn:
                raw = await conn.fetchval(
                    "SELECT value FROM kv_records WHERE key = $1",
                    key,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to read record",
                extra={"key": key, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to read record {key}: {e}",
                original_error=e,
            ) from e
        return _decode(raw) if raw is not None else None

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO kv_records (key, value, updated_at)
                    VALUES ($1, $2::jsonb, now())
                    ON CONFLICT (key) DO UPDATE
                    SET value = EXCLUDED.value, updated_at = now()
                    """,
                    key,
                    json.dumps(value),
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to write record",
                extra={"key": key, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to write record {key}: {e}",
                original_error=e,
            ) from e

    async def set_if_absent(self, key: str, value: Dict[str, Any]) -> bool:
        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO kv_records (key, value)
                    VALUES ($1, $2::jsonb)
                    ON CONFLICT (key) DO NOTHING
                    """,
                    key,
                    json.dumps(value),
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to insert record {key}: {e}",
                original_error=e,
            ) from e
        rows_affected = int(result.split()[-1])
        return rows_affected > 0

    async def delete(self, key: str) -> bool:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM kv_records WHERE key = $1",
                    key,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to delete record {key}: {e}",
                original_error=e,
            ) from e
        return int(result.split()[-1]) > 0

    async def append(self, key: str, value: Dict[str, Any]) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "INSERT INTO kv_lists (key, value) VALUES ($1, $2::jsonb)",
                    key,
                    json.dumps(value),
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to append to list {key}: {e}",
                original_error=e,
            ) from e

    async def list_range(self, key: str) -> List[Dict[str, Any]]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT value FROM kv_lists WHERE key = $1 ORDER BY id ASC",
                    key,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to read list {key}: {e}",
                original_error=e,
            ) from e
        return [_decode(row["value"]) for row in rows]

    async def ping(self) -> bool:
        """Check if the database connection is healthy."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning(
                "Key-value ping failed",
                extra={"error": str(e)},
            )
            return False

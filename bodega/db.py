import asyncpg
import hashlib
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

from bodega import config
from bodega.errors import LocalStoreError

logger = logging.getLogger(__name__)

DB_POOL = None # Global pool, opened by the worker process

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMP DEFAULT now()
);
CREATE TABLE IF NOT EXISTS asset_cache (
    version TEXT NOT NULL,
    url TEXT NOT NULL,
    status INTEGER NOT NULL,
    headers JSONB NOT NULL,
    body BYTEA NOT NULL,
    cached_at TIMESTAMP DEFAULT now(),
    PRIMARY KEY (version, url)
);
"""

# Errors that mean "the store is not there", as opposed to a bug in our code
STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, ConnectionError)


async def init_db_pool(dsn: str | None = None):
    """Initializes the asyncpg pool."""
    global DB_POOL
    dsn = dsn or config.DATABASE_URL
    if not dsn:
        logger.error("DATABASE_URL is not set. Cannot initialize DB Pool.")
        return
    try:
        DB_POOL = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=10)
        logger.info("Database connection pool initialized.")
    except STORE_ERRORS:
        logger.exception("Failed to initialize database connection pool")
        DB_POOL = None


async def close_db_pool():
    """Closes the asyncpg pool."""
    global DB_POOL
    if DB_POOL:
        await DB_POOL.close()
        logger.info("Database connection pool closed.")
        DB_POOL = None


def get_connection():
    """Returns a pooled connection.
    Use as an async context manager: async with get_connection() as conn:
    """
    if not DB_POOL:
        logger.error("DB Pool is not initialized. Cannot get connection.")
        raise LocalStoreError("Database pool not available")
    return DB_POOL.acquire()


async def init_schema():
    async with get_connection() as conn:
        await conn.execute(SCHEMA)
    logger.info("Schema for kv_store and asset_cache is in place.")


def _lock_id(name: str) -> int:
    # pg advisory locks take a signed bigint
    digest = hashlib.sha1(name.encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class PostgresStore:
    """Durable key-value store on top of the kv_store table.

    Values are JSON documents. mutate() runs the read and the write in one
    transaction with the row locked, so concurrent writers never lose updates.
    """

    async def get(self, key: str, default: Any = None) -> Any:
        try:
            async with get_connection() as conn:
                raw = await conn.fetchval("SELECT value FROM kv_store WHERE key = $1", key)
        except STORE_ERRORS as e:
            raise LocalStoreError(f"Failed to read '{key}': {e}") from e
        if raw is None:
            return default
        return json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        try:
            async with get_connection() as conn:
                await self._write(conn, key, value)
        except STORE_ERRORS as e:
            raise LocalStoreError(f"Failed to write '{key}': {e}") from e

    async def delete(self, key: str) -> None:
        try:
            async with get_connection() as conn:
                await conn.execute("DELETE FROM kv_store WHERE key = $1", key)
        except STORE_ERRORS as e:
            raise LocalStoreError(f"Failed to delete '{key}': {e}") from e

    async def mutate(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        try:
            async with get_connection() as conn:
                async with conn.transaction():
                    # Make sure the row exists so FOR UPDATE has something to lock
                    await conn.execute("""
                        INSERT INTO kv_store (key, value) VALUES ($1, $2)
                        ON CONFLICT (key) DO NOTHING
                    """, key, json.dumps(default))
                    raw = await conn.fetchval(
                        "SELECT value FROM kv_store WHERE key = $1 FOR UPDATE", key
                    )
                    current = json.loads(raw) if raw is not None else default
                    new_value = fn(current)
                    await self._write(conn, key, new_value)
        except STORE_ERRORS as e:
            raise LocalStoreError(f"Failed to update '{key}': {e}") from e
        return new_value

    @asynccontextmanager
    async def exclusive(self, name: str):
        """Yields True if the named advisory lock was taken, False if someone else holds it."""
        lock_id = _lock_id(name)
        try:
            async with get_connection() as conn:
                acquired = await conn.fetchval("SELECT pg_try_advisory_lock($1)", lock_id)
                try:
                    yield acquired
                finally:
                    if acquired:
                        await conn.execute("SELECT pg_advisory_unlock($1)", lock_id)
        except STORE_ERRORS as e:
            raise LocalStoreError(f"Failed to take lock '{name}': {e}") from e

    @staticmethod
    async def _write(conn, key: str, value: Any):
        await conn.execute("""
            INSERT INTO kv_store (key, value, updated_at)
            VALUES ($1, $2, now())
            ON CONFLICT (key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = now()
        """, key, json.dumps(value))


class PostgresCacheStorage:
    """Versioned asset cache on top of the asset_cache table."""

    async def versions(self) -> list[str]:
        try:
            async with get_connection() as conn:
                rows = await conn.fetch("SELECT DISTINCT version FROM asset_cache ORDER BY version")
        except STORE_ERRORS as e:
            raise LocalStoreError(f"Failed to list cache versions: {e}") from e
        return [row["version"] for row in rows]

    async def put_all(self, version: str, entries: list[dict]) -> None:
        """Stores every entry under the version, or none of them."""
        try:
            async with get_connection() as conn:
                async with conn.transaction():
                    await conn.executemany("""
                        INSERT INTO asset_cache (version, url, status, headers, body)
                        VALUES ($1, $2, $3, $4, $5)
                        ON CONFLICT (version, url) DO UPDATE SET
                            status = EXCLUDED.status,
                            headers = EXCLUDED.headers,
                            body = EXCLUDED.body,
                            cached_at = now()
                    """, [
                        (version, e["url"], e["status"], json.dumps(e["headers"]), e["body"])
                        for e in entries
                    ])
        except STORE_ERRORS as e:
            raise LocalStoreError(f"Failed to store cache version {version}: {e}") from e

    async def match(self, version: str, url: str) -> dict | None:
        try:
            async with get_connection() as conn:
                row = await conn.fetchrow("""
                    SELECT url, status, headers, body FROM asset_cache
                    WHERE version = $1 AND url = $2
                """, version, url)
        except STORE_ERRORS as e:
            raise LocalStoreError(f"Failed to read cache version {version}: {e}") from e
        if row is None:
            return None
        return {
            "url": row["url"],
            "status": row["status"],
            "headers": json.loads(row["headers"]),
            "body": bytes(row["body"]),
        }

    async def delete(self, version: str) -> None:
        try:
            async with get_connection() as conn:
                await conn.execute("DELETE FROM asset_cache WHERE version = $1", version)
        except STORE_ERRORS as e:
            raise LocalStoreError(f"Failed to delete cache version {version}: {e}") from e

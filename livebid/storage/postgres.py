"""Postgres storage backend leveraging asyncpg."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg
import orjson


class PostgresStorage:
    """JSONB tables plus advisory locks for cross-process auction lanes.

    Advisory locks live on a dedicated pool of ``lock_pool_size``
    connections, separate from the data pool. At most ``lock_pool_size``
    auctions can be mutated at once per process.
    """

    def __init__(
        self,
        *,
        dsn: str | None = None,
        lock_pool_size: int = 10,
        lock_wait_seconds: float = 5.0,
        lock_retry_seconds: float = 0.05,
        **connect_kwargs: Any,
    ) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._connect_kwargs = connect_kwargs
        self._lock_pool_size = lock_pool_size
        self._lock_wait = lock_wait_seconds
        self._lock_retry = lock_retry_seconds
        self._pool: asyncpg.Pool | None = None
        self._lock_pool: asyncpg.Pool | None = None

    def _encode(self, payload: dict[str, Any]) -> str:
        return orjson.dumps(payload).decode()

    def _decode(self, value: Any) -> dict[str, Any]:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode()
        if isinstance(value, str):
            return orjson.loads(value)
        return value

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS auctions (
                        auction_id TEXT PRIMARY KEY,
                        data JSONB NOT NULL
                    );
                    CREATE TABLE IF NOT EXISTS bids (
                        seq BIGSERIAL PRIMARY KEY,
                        bid_id TEXT UNIQUE NOT NULL,
                        auction_id TEXT NOT NULL,
                        data JSONB NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS idx_bids_auction ON bids (auction_id, seq);
                    CREATE TABLE IF NOT EXISTS transactions (
                        transaction_id TEXT PRIMARY KEY,
                        auction_id TEXT NOT NULL,
                        data JSONB NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS idx_transactions_auction
                    ON transactions (auction_id);
                    CREATE TABLE IF NOT EXISTS void_requests (
                        void_request_id TEXT PRIMARY KEY,
                        transaction_id TEXT NOT NULL,
                        data JSONB NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS idx_void_requests_transaction
                    ON void_requests (transaction_id);
                    """
                )
        return self._pool

    async def _fetch_one(self, query: str, key: str, label: str) -> dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(query, key)
        if not row:
            raise KeyError(f"{label} not found")
        return self._decode(row["data"])

    async def _fetch_all(self, query: str, *args: Any) -> list[dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [self._decode(row["data"]) for row in rows]

    async def _execute(self, query: str, *args: Any) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(query, *args)

    async def save_auction(self, auction: dict[str, Any]) -> dict[str, Any]:
        await self._execute(
            """INSERT INTO auctions(auction_id, data) VALUES($1, $2)
               ON CONFLICT (auction_id) DO UPDATE SET data=EXCLUDED.data""",
            auction["id"],
            self._encode(auction),
        )
        return auction

    async def get_auction(self, auction_id: str) -> dict[str, Any]:
        return await self._fetch_one(
            """SELECT data FROM auctions WHERE auction_id=$1""",
            auction_id,
            f"auction {auction_id}",
        )

    async def list_auctions(self) -> list[dict[str, Any]]:
        return await self._fetch_all("SELECT data FROM auctions ORDER BY auction_id")

    async def append_bid(self, bid: dict[str, Any]) -> dict[str, Any]:
        await self._execute(
            """INSERT INTO bids(bid_id, auction_id, data) VALUES($1, $2, $3)""",
            bid["id"],
            bid["auction_id"],
            self._encode(bid),
        )
        return bid

    async def list_bids(self, auction_id: str) -> list[dict[str, Any]]:
        return await self._fetch_all(
            "SELECT data FROM bids WHERE auction_id=$1 ORDER BY seq", auction_id
        )

    async def save_transaction(self, transaction: dict[str, Any]) -> dict[str, Any]:
        await self._execute(
            """INSERT INTO transactions(transaction_id, auction_id, data) VALUES($1, $2, $3)
               ON CONFLICT (transaction_id) DO UPDATE SET data=EXCLUDED.data""",
            transaction["id"],
            transaction["auction_id"],
            self._encode(transaction),
        )
        return transaction

    async def get_transaction(self, transaction_id: str) -> dict[str, Any]:
        return await self._fetch_one(
            """SELECT data FROM transactions WHERE transaction_id=$1""",
            transaction_id,
            f"transaction {transaction_id}",
        )

    async def list_transactions(self, auction_id: str) -> list[dict[str, Any]]:
        return await self._fetch_all(
            "SELECT data FROM transactions WHERE auction_id=$1 ORDER BY transaction_id",
            auction_id,
        )

    async def save_void_request(self, void_request: dict[str, Any]) -> dict[str, Any]:
        await self._execute(
            """INSERT INTO void_requests(void_request_id, transaction_id, data) VALUES($1, $2, $3)
               ON CONFLICT (void_request_id) DO UPDATE SET data=EXCLUDED.data""",
            void_request["id"],
            void_request["transaction_id"],
            self._encode(void_request),
        )
        return void_request

    async def get_void_request(self, void_request_id: str) -> dict[str, Any]:
        return await self._fetch_one(
            """SELECT data FROM void_requests WHERE void_request_id=$1""",
            void_request_id,
            f"void request {void_request_id}",
        )

    async def list_void_requests(self, transaction_id: str) -> list[dict[str, Any]]:
        return await self._fetch_all(
            "SELECT data FROM void_requests WHERE transaction_id=$1 ORDER BY void_request_id",
            transaction_id,
        )

    async def _ensure_lock_pool(self) -> asyncpg.Pool:
        if self._lock_pool is None:
            options = {
                name: value
                for name, value in self._connect_kwargs.items()
                if name not in ("min_size", "max_size")
            }
            self._lock_pool = await asyncpg.create_pool(
                dsn=self._dsn, min_size=0, max_size=self._lock_pool_size, **options
            )
        return self._lock_pool

    @asynccontextmanager
    async def key_lock(self, key: str) -> AsyncIterator[None]:
        pool = await self._ensure_lock_pool()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lock_wait
        try:
            conn = await pool.acquire(timeout=self._lock_wait)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"no lock connection free for {key}") from exc
        try:
            while not await conn.fetchval("SELECT pg_try_advisory_lock(hashtext($1))", key):
                if loop.time() >= deadline:
                    raise TimeoutError(f"could not lock {key}")
                await asyncio.sleep(self._lock_retry)
            try:
                yield
            finally:
                await conn.execute("SELECT pg_advisory_unlock(hashtext($1))", key)
        finally:
            await pool.release(conn)

    async def close(self) -> None:
        for pool in (self._pool, self._lock_pool):
            if pool is not None:
                await pool.close()
        self._pool = None
        self._lock_pool = None

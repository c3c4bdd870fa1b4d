"""Redis storage backend using redis-py asyncio client."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import orjson
from redis import asyncio as aioredis
from redis.exceptions import LockError


class RedisStorage:
    def __init__(
        self,
        *,
        url: str,
        prefix: str = "livebid",
        lock_timeout_seconds: float = 10.0,
        lock_wait_seconds: float = 5.0,
    ) -> None:
        if not url:
            raise ValueError("redis url missing")
        self._redis = aioredis.from_url(url)
        self._prefix = prefix.rstrip(":")
        self._lock_timeout = lock_timeout_seconds
        self._lock_wait = lock_wait_seconds

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    async def _get_doc(self, key: str, label: str) -> dict[str, Any]:
        raw = await self._redis.get(key)
        if raw is None:
            raise KeyError(f"{label} not found")
        return orjson.loads(raw)

    async def _get_many(self, index_key: str, kind: str) -> list[dict[str, Any]]:
        members = await self._redis.smembers(index_key)
        if not members:
            return []
        keys = [self._key(kind, _text(member)) for member in sorted(members)]
        values = await self._redis.mget(keys)
        return [orjson.loads(value) for value in values if value]

    async def save_auction(self, auction: dict[str, Any]) -> dict[str, Any]:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("auction", auction["id"]), orjson.dumps(auction))
            pipe.sadd(self._key("auctions"), auction["id"])
            await pipe.execute()
        return auction

    async def get_auction(self, auction_id: str) -> dict[str, Any]:
        return await self._get_doc(self._key("auction", auction_id), f"auction {auction_id}")

    async def list_auctions(self) -> list[dict[str, Any]]:
        return await self._get_many(self._key("auctions"), "auction")

    async def append_bid(self, bid: dict[str, Any]) -> dict[str, Any]:
        await self._redis.rpush(self._key("bids", bid["auction_id"]), orjson.dumps(bid))
        return bid

    async def list_bids(self, auction_id: str) -> list[dict[str, Any]]:
        values = await self._redis.lrange(self._key("bids", auction_id), 0, -1)
        return [orjson.loads(value) for value in values]

    async def save_transaction(self, transaction: dict[str, Any]) -> dict[str, Any]:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("txn", transaction["id"]), orjson.dumps(transaction))
            pipe.sadd(self._key("auction_txns", transaction["auction_id"]), transaction["id"])
            await pipe.execute()
        return transaction

    async def get_transaction(self, transaction_id: str) -> dict[str, Any]:
        return await self._get_doc(
            self._key("txn", transaction_id), f"transaction {transaction_id}"
        )

    async def list_transactions(self, auction_id: str) -> list[dict[str, Any]]:
        return await self._get_many(self._key("auction_txns", auction_id), "txn")

    async def save_void_request(self, void_request: dict[str, Any]) -> dict[str, Any]:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("void", void_request["id"]), orjson.dumps(void_request))
            pipe.sadd(
                self._key("txn_voids", void_request["transaction_id"]), void_request["id"]
            )
            await pipe.execute()
        return void_request

    async def get_void_request(self, void_request_id: str) -> dict[str, Any]:
        return await self._get_doc(
            self._key("void", void_request_id), f"void request {void_request_id}"
        )

    async def list_void_requests(self, transaction_id: str) -> list[dict[str, Any]]:
        return await self._get_many(self._key("txn_voids", transaction_id), "void")

    @asynccontextmanager
    async def key_lock(self, key: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            self._key("lock", key),
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_wait,
        )
        try:
            acquired = await lock.acquire()
        except LockError as exc:
            raise TimeoutError(f"could not lock {key}") from exc
        if not acquired:
            raise TimeoutError(f"could not lock {key}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lock expired while held; the next holder already owns it.
                pass

    async def close(self) -> None:
        await self._redis.aclose()


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode()
    return str(value)

"""Storage backend factory."""

from __future__ import annotations

from typing import AsyncContextManager, Protocol

from ..config import ServerConfig
from .in_memory import InMemoryStorage
from .postgres import PostgresStorage
from .redis import RedisStorage


class AuctionStorage(Protocol):
    async def save_auction(self, auction: dict) -> dict: ...

    async def get_auction(self, auction_id: str) -> dict: ...

    async def list_auctions(self) -> list[dict]: ...

    async def append_bid(self, bid: dict) -> dict: ...

    async def list_bids(self, auction_id: str) -> list[dict]: ...

    async def save_transaction(self, transaction: dict) -> dict: ...

    async def get_transaction(self, transaction_id: str) -> dict: ...

    async def list_transactions(self, auction_id: str) -> list[dict]: ...

    async def save_void_request(self, void_request: dict) -> dict: ...

    async def get_void_request(self, void_request_id: str) -> dict: ...

    async def list_void_requests(self, transaction_id: str) -> list[dict]: ...

    def key_lock(self, key: str) -> AsyncContextManager[None]:
        """Cross-process exclusion for one auction key."""
        ...

    async def close(self) -> None: ...


def build_storage(config: ServerConfig) -> AuctionStorage:
    backend = config.storage.backend
    options = dict(config.storage.options)
    if backend == "in_memory":
        return InMemoryStorage()
    if backend == "redis":
        return RedisStorage(**options)
    if backend == "postgres":
        return PostgresStorage(**options)
    raise ValueError(f"unknown storage backend {backend}")

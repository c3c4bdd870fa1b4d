"""In-memory storage backend for auctions, bids, transactions and void requests."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from copy import deepcopy
from typing import Any, AsyncIterator


class InMemoryStorage:
    def __init__(self) -> None:
        self._auctions: dict[str, dict[str, Any]] = {}
        self._bids: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._transactions: dict[str, dict[str, Any]] = {}
        self._void_requests: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save_auction(self, auction: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            self._auctions[auction["id"]] = deepcopy(auction)
            return deepcopy(auction)

    async def get_auction(self, auction_id: str) -> dict[str, Any]:
        async with self._lock:
            try:
                return deepcopy(self._auctions[auction_id])
            except KeyError as exc:
                raise KeyError(f"auction {auction_id} not found") from exc

    async def list_auctions(self) -> list[dict[str, Any]]:
        async with self._lock:
            return [deepcopy(auction) for auction in self._auctions.values()]

    async def append_bid(self, bid: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            self._bids[bid["auction_id"]].append(deepcopy(bid))
            return deepcopy(bid)

    async def list_bids(self, auction_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            return [deepcopy(bid) for bid in self._bids.get(auction_id, [])]

    async def save_transaction(self, transaction: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            self._transactions[transaction["id"]] = deepcopy(transaction)
            return deepcopy(transaction)

    async def get_transaction(self, transaction_id: str) -> dict[str, Any]:
        async with self._lock:
            try:
                return deepcopy(self._transactions[transaction_id])
            except KeyError as exc:
                raise KeyError(f"transaction {transaction_id} not found") from exc

    async def list_transactions(self, auction_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            return [
                deepcopy(txn)
                for txn in self._transactions.values()
                if txn["auction_id"] == auction_id
            ]

    async def save_void_request(self, void_request: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            self._void_requests[void_request["id"]] = deepcopy(void_request)
            return deepcopy(void_request)

    async def get_void_request(self, void_request_id: str) -> dict[str, Any]:
        async with self._lock:
            try:
                return deepcopy(self._void_requests[void_request_id])
            except KeyError as exc:
                raise KeyError(f"void request {void_request_id} not found") from exc

    async def list_void_requests(self, transaction_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            return [
                deepcopy(request)
                for request in self._void_requests.values()
                if request["transaction_id"] == transaction_id
            ]

    @asynccontextmanager
    async def key_lock(self, key: str) -> AsyncIterator[None]:
        # Single process: the keyed serializer is already the exclusion point.
        yield

    async def close(self) -> None:
        return None

"""Listing lookup against the catalog service."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

import httpx

from ..auction.models import Listing


class ListingDirectory(Protocol):
    async def get_listing(self, auction_id: str) -> Listing | None: ...


class InMemoryListingDirectory:
    def __init__(self, listings: list[Mapping[str, Any]] | None = None) -> None:
        self._listings: dict[str, Listing] = {}
        for item in listings or []:
            self.register(Listing.from_dict(dict(item)))

    def register(self, listing: Listing) -> None:
        self._listings[listing.auction_id] = listing

    async def get_listing(self, auction_id: str) -> Listing | None:
        return self._listings.get(auction_id)


class HttpListingDirectory:
    def __init__(self, *, base_url: str, timeout_ms: int = 500) -> None:
        if not base_url:
            raise ValueError("listing directory requires base_url")
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_ms / 1000)

    async def get_listing(self, auction_id: str) -> Listing | None:
        response = await self._client.get(f"/listings/{auction_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Listing.from_dict({"auction_id": auction_id, **response.json()})

    async def close(self) -> None:
        await self._client.aclose()


def build_listing_directory(backend: str, options: Mapping[str, Any]) -> ListingDirectory:
    if backend == "in_memory":
        return InMemoryListingDirectory(options.get("listings"))
    if backend == "http":
        return HttpListingDirectory(**options)
    raise ValueError(f"unknown listings backend {backend}")

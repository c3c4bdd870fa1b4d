"""HTTP surface: routing, identity, payload validation and error mapping."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from livebid.auction.errors import SerializationTimeout, TooManyPendingOperations
from livebid.auction.models import Listing
from livebid.main import app

SELLER = {"X-User-Id": "seller"}
ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}
ADMIN = {"X-User-Id": "ops", "X-User-Role": "admin"}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        app.state.listings.register(
            Listing(
                auction_id="auc_api",
                seller_id="seller",
                starting_price=Decimal("500"),
                bid_increment=Decimal("50"),
                end_time=datetime.now(timezone.utc) + timedelta(hours=1),
            )
        )
        yield test_client


def publish(client: TestClient) -> dict:
    response = client.post("/auctions/auc_api/publish", headers=SELLER)
    assert response.status_code == 201
    return response.json()


def test_bid_and_status_flow(client):
    auction = publish(client)
    assert auction["status"] == "open"

    response = client.post("/auctions/auc_api/bids", json={"amount": "550"}, headers=ALICE)
    assert response.status_code == 201
    assert response.json()["new_highest"] == "550"

    response = client.post("/auctions/auc_api/bids", json={"amount": 500}, headers=BOB)
    assert response.status_code == 409
    body = response.json()
    assert body["reason"] == "AmountTooLow"
    assert body["minimum"] == "600"
    assert body["retryable"] is False

    status = client.get("/auctions/auc_api/status").json()
    assert status["current_highest_bid"] == "550"
    assert status["bid_count"] == 1

    history = client.get("/auctions/auc_api/bids").json()
    assert [item["bidder_id"] for item in history] == ["alice"]


def test_identity_and_payload_errors(client):
    publish(client)

    assert client.post("/auctions/auc_api/bids", json={"amount": "550"}).status_code == 401

    response = client.post("/auctions/auc_api/bids", json={"amount": "lots"}, headers=ALICE)
    assert response.status_code == 422
    assert response.json()["reason"] == "InvalidPayload"

    response = client.post("/auctions/auc_api/publish", headers=ALICE)
    assert response.status_code == 403
    assert response.json()["reason"] == "NotAuctionOwner"

    response = client.post("/auctions/auc_api/bids", json={"amount": "550"}, headers=SELLER)
    assert response.status_code == 403
    assert response.json()["reason"] == "SellerCannotBid"


def test_unknown_resources_are_404(client):
    assert client.get("/auctions/missing/status").json()["reason"] == "NotFound"
    assert client.get("/auctions/missing/status").status_code == 404
    assert client.post("/auctions/missing/publish", headers=SELLER).status_code == 404
    assert client.get("/events/auctions/missing").status_code == 404
    assert client.get("/void-requests/nope", headers=ALICE).status_code == 404


def test_accept_void_and_restart_over_http(client):
    publish(client)
    client.post("/auctions/auc_api/bids", json={"amount": "550"}, headers=ALICE)

    response = client.post("/auctions/auc_api/accept", headers=SELLER)
    assert response.status_code == 200
    transaction = response.json()["transaction"]
    assert transaction["buyer_id"] == "alice"
    assert transaction["amount"] == "550"

    response = client.post("/auctions/auc_api/bids", json={"amount": "700"}, headers=BOB)
    assert response.status_code == 409
    assert response.json()["reason"] == "AuctionClosed"

    response = client.post(
        f"/transactions/{transaction['id']}/void", json={"reason": "cannot pay"}, headers=ALICE
    )
    assert response.status_code == 201
    void_request = response.json()

    duplicate = client.post(
        f"/transactions/{transaction['id']}/void", json={"reason": "again"}, headers=SELLER
    )
    assert duplicate.json()["reason"] == "VoidAlreadyPending"

    response = client.post(
        f"/void-requests/{void_request['id']}/respond", json={"action": "approve"}, headers=SELLER
    )
    assert response.json()["status"] == "approved"

    response = client.post(
        f"/void-requests/{void_request['id']}/remediation",
        json={"choice": "offer_second_bidder"},
        headers=SELLER,
    )
    assert response.status_code == 409
    assert response.json()["reason"] == "NoSecondBidderAvailable"

    response = client.post(
        f"/void-requests/{void_request['id']}/remediation",
        json={"choice": "restart_bidding"},
        headers=SELLER,
    )
    assert response.json()["stage"] == "restarted"
    assert client.get("/auctions/auc_api/status").json()["status"] == "open"

    listed = client.get(f"/transactions/{transaction['id']}/void-requests", headers=ALICE).json()
    assert [item["id"] for item in listed] == [void_request["id"]]
    hidden = client.get(f"/transactions/{transaction['id']}/void-requests", headers=BOB)
    assert hidden.status_code == 403


def test_contention_is_retryable(client):
    publish(client)
    app.state.engine.submit_bid = AsyncMock(side_effect=TooManyPendingOperations("busy", pending=64))
    response = client.post("/auctions/auc_api/bids", json={"amount": "550"}, headers=ALICE)
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "1"
    assert response.json()["retryable"] is True

    app.state.engine.submit_bid = AsyncMock(side_effect=SerializationTimeout("slow"))
    response = client.post("/auctions/auc_api/bids", json={"amount": "550"}, headers=ALICE)
    assert response.status_code == 503
    assert response.json()["reason"] == "SerializationTimeout"


def test_user_stream_is_private(client):
    assert client.get("/events/users/bob", headers=ALICE).status_code == 403


def test_admin_routes(client):
    publish(client)
    client.post("/auctions/auc_api/bids", json={"amount": "550"}, headers=ALICE)

    health = client.get("/admin/health").json()
    assert health["status"] == "healthy"
    assert health["scheduler_running"] is True

    stats = client.get("/admin/stats").json()
    assert stats["total_auctions"] == 1
    assert stats["total_bids"] == 1
    assert stats["auctions_by_status"] == {"open": 1}

    config = client.get("/admin/config").json()
    assert config["storage_backend"] == "in_memory"
    assert config["engine"]["max_pending_per_auction"] == 64

    assert client.post("/admin/integrity", json={}, headers=ALICE).status_code == 403
    response = client.post("/admin/integrity", json={"auction_ids": ["auc_api"]}, headers=ADMIN)
    assert response.json() == {"repaired": [], "consistent": True}

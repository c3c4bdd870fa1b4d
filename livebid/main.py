from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from .admin import config as admin_config
from .admin import health as admin_health
from .admin import integrity as admin_integrity
from .admin import stats as admin_stats
from .auction.engine import BiddingEngine
from .auction.errors import AuctionError, NotAuctionOwner, NotFound
from .auction.scheduler import AuctionScheduler
from .auction.serializer import KeyedSerializer
from .collaborators import (
    Identity,
    IdentityError,
    IdentityProvider,
    ListingDirectory,
    NotificationDispatcher,
    build_identity_provider,
    build_listing_directory,
    build_notification_sink,
)
from .config import ServerConfig, get_server_config
from .disputes.workflow import DisputeWorkflow
from .realtime.distributor import EventDistributor, RedisEventRelay
from .realtime.events import auction_topic, user_topic
from .realtime.hub import SubscriptionHub
from .realtime.stream import SSE_HEADERS, sse_stream
from .storage import build_storage
from .validation.validator import PayloadError, SchemaRegistry, get_schema_registry

_STATUS_BY_CODE = {
    "NotFound": status.HTTP_404_NOT_FOUND,
    "NotAuctionOwner": status.HTTP_403_FORBIDDEN,
    "NotAParty": status.HTTP_403_FORBIDDEN,
    "SellerCannotBid": status.HTTP_403_FORBIDDEN,
    "InvalidAmount": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "TooManyPendingOperations": status.HTTP_429_TOO_MANY_REQUESTS,
    "SerializationTimeout": status.HTTP_503_SERVICE_UNAVAILABLE,
}

RETRY_AFTER_SECONDS = "1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    schema_registry = get_schema_registry()
    storage = build_storage(server_config)
    engine_settings = server_config.engine
    serializer = KeyedSerializer(
        max_pending=engine_settings.max_pending_per_auction,
        slot_timeout_ms=engine_settings.slot_timeout_ms,
        lock_factory=storage.key_lock,
    )
    distribution = server_config.distribution
    hub = SubscriptionHub(queue_size=distribution.subscriber_queue_size)
    distributor = EventDistributor(
        hub, backend=distribution.backend, options=dict(distribution.options)
    )
    relay: RedisEventRelay | None = None
    relay_task: asyncio.Task | None = None
    if distribution.backend == "redis":
        relay = RedisEventRelay(hub, dict(distribution.options))
        relay_task = asyncio.create_task(relay.run())
    notifier = NotificationDispatcher(
        build_notification_sink(
            server_config.notifications.backend, server_config.notifications.options
        )
    )
    identity = build_identity_provider(
        server_config.identity.backend, server_config.identity.options
    )
    listings = build_listing_directory(
        server_config.listings.backend, server_config.listings.options
    )
    engine = BiddingEngine(
        storage,
        serializer,
        distributor,
        notifier,
        restart_window_seconds=engine_settings.restart_window_seconds,
    )
    workflow = DisputeWorkflow(engine, distributor, notifier)
    scheduler = AuctionScheduler(
        engine,
        expiry_sweep_seconds=engine_settings.expiry_sweep_seconds,
        integrity_sweep_seconds=engine_settings.integrity_sweep_seconds,
    )
    scheduler.start()

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.storage = storage
    app.state.serializer = serializer
    app.state.hub = hub
    app.state.distributor = distributor
    app.state.relay = relay
    app.state.notifier = notifier
    app.state.identity = identity
    app.state.listings = listings
    app.state.engine = engine
    app.state.workflow = workflow
    app.state.scheduler = scheduler
    app.state.start_time = datetime.now(timezone.utc)

    yield

    await scheduler.stop()
    if relay_task is not None:
        relay_task.cancel()
        await asyncio.gather(relay_task, return_exceptions=True)
    await serializer.close()
    await distributor.close()
    await notifier.drain()
    await storage.close()


app = FastAPI(
    title="livebid",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_stats.router)
app.include_router(admin_config.router)
app.include_router(admin_integrity.router)


@app.exception_handler(AuctionError)
async def auction_error_handler(request: Request, exc: AuctionError) -> JSONResponse:
    code = _STATUS_BY_CODE.get(exc.code, status.HTTP_409_CONFLICT)
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if exc.retryable else None
    return JSONResponse(status_code=code, content=exc.to_dict(), headers=headers)


@app.exception_handler(PayloadError)
async def payload_error_handler(request: Request, exc: PayloadError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "reason": "InvalidPayload",
            "detail": str(exc),
            "retryable": False,
            "errors": exc.errors,
        },
    )


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_engine(request: Request) -> BiddingEngine:
    return request.app.state.engine


def get_workflow(request: Request) -> DisputeWorkflow:
    return request.app.state.workflow


def get_listings(request: Request) -> ListingDirectory:
    return request.app.state.listings


def get_hub(request: Request) -> SubscriptionHub:
    return request.app.state.hub


def get_identity(request: Request) -> Identity:
    provider: IdentityProvider = request.app.state.identity
    try:
        return provider.identify(request.headers)
    except IdentityError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "livebid",
        "version": app.version,
        "engine": {
            "max_pending_per_auction": settings.engine.max_pending_per_auction,
            "slot_timeout_ms": settings.engine.slot_timeout_ms,
        },
        "distribution_backend": settings.distribution.backend,
    }


@app.get("/ping", tags=["meta"])
async def ping() -> dict[str, Any]:
    return {"status": "ok", "version": app.version}


@app.post("/auctions/{auction_id}/publish", tags=["auctions"], status_code=status.HTTP_201_CREATED)
async def publish_auction(
    auction_id: str,
    identity: Identity = Depends(get_identity),
    listings: ListingDirectory = Depends(get_listings),
    engine: BiddingEngine = Depends(get_engine),
) -> dict[str, Any]:
    listing = await listings.get_listing(auction_id)
    if listing is None:
        raise NotFound(f"listing {auction_id} not found", auction_id=auction_id)
    if listing.seller_id != identity.user_id and not identity.is_admin:
        raise NotAuctionOwner(f"{identity.user_id} does not own listing {auction_id}")
    auction = await engine.open_auction(listing)
    return auction.to_dict()


@app.post("/auctions/{auction_id}/bids", tags=["auctions"], status_code=status.HTTP_201_CREATED)
async def submit_bid(
    auction_id: str,
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_identity),
    schemas: SchemaRegistry = Depends(get_schema_service),
    engine: BiddingEngine = Depends(get_engine),
) -> dict[str, Any]:
    schemas.validate("bid_request", payload)
    outcome = await engine.submit_bid(
        auction_id,
        identity.user_id,
        payload["amount"],
        mask_name=bool(payload.get("mask_name", False)),
    )
    return outcome.to_dict()


@app.post("/auctions/{auction_id}/accept", tags=["auctions"])
async def accept_highest_bid(
    auction_id: str,
    identity: Identity = Depends(get_identity),
    engine: BiddingEngine = Depends(get_engine),
) -> dict[str, Any]:
    transaction = await engine.accept_highest_bid(auction_id, identity.user_id)
    return {"transaction": transaction.to_dict()}


@app.post("/auctions/{auction_id}/expire", tags=["auctions"])
async def expire_auction(
    auction_id: str,
    engine: BiddingEngine = Depends(get_engine),
) -> dict[str, Any]:
    outcome = await engine.expire_if_due(auction_id)
    return outcome.to_dict()


@app.get("/auctions/{auction_id}/status", tags=["auctions"])
async def auction_status(
    auction_id: str,
    engine: BiddingEngine = Depends(get_engine),
) -> dict[str, Any]:
    snapshot = await engine.get_auction_status(auction_id)
    return snapshot.to_dict()


@app.get("/auctions/{auction_id}/bids", tags=["auctions"])
async def auction_bids(
    auction_id: str,
    engine: BiddingEngine = Depends(get_engine),
) -> list[dict[str, Any]]:
    return await engine.list_bids(auction_id)


@app.post(
    "/transactions/{transaction_id}/void",
    tags=["disputes"],
    status_code=status.HTTP_201_CREATED,
)
async def request_void(
    transaction_id: str,
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_identity),
    schemas: SchemaRegistry = Depends(get_schema_service),
    workflow: DisputeWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    schemas.validate("void_request", payload)
    request = await workflow.request_void(transaction_id, identity.user_id, payload["reason"])
    return request.to_dict()


@app.post("/transactions/{transaction_id}/status", tags=["disputes"])
async def advance_transaction(
    transaction_id: str,
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_identity),
    schemas: SchemaRegistry = Depends(get_schema_service),
    workflow: DisputeWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    schemas.validate("transaction_status", payload)
    transaction = await workflow.advance_transaction(
        transaction_id, identity.user_id, payload["status"]
    )
    return transaction.to_dict()


@app.get("/transactions/{transaction_id}/void-requests", tags=["disputes"])
async def list_void_requests(
    transaction_id: str,
    identity: Identity = Depends(get_identity),
    workflow: DisputeWorkflow = Depends(get_workflow),
) -> list[dict[str, Any]]:
    transaction = await workflow.get_transaction(transaction_id)
    _require_party_or_admin(identity, transaction.parties())
    return [request.to_dict() for request in await workflow.list_void_requests(transaction_id)]


@app.get("/void-requests/{void_request_id}", tags=["disputes"])
async def get_void_request(
    void_request_id: str,
    identity: Identity = Depends(get_identity),
    workflow: DisputeWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    request = await workflow.get_void_request(void_request_id)
    transaction = await workflow.get_transaction(request.transaction_id)
    allowed = set(transaction.parties())
    if request.second_bidder_offer is not None:
        allowed.add(request.second_bidder_offer.bidder_id)
    _require_party_or_admin(identity, allowed)
    return request.to_dict()


@app.post("/void-requests/{void_request_id}/respond", tags=["disputes"])
async def respond_to_void(
    void_request_id: str,
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_identity),
    schemas: SchemaRegistry = Depends(get_schema_service),
    workflow: DisputeWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    schemas.validate("void_response", payload)
    request = await workflow.respond_to_void(
        void_request_id,
        identity.user_id,
        payload["action"],
        rejection_reason=payload.get("rejection_reason"),
    )
    return request.to_dict()


@app.post("/void-requests/{void_request_id}/remediation", tags=["disputes"])
async def choose_remediation(
    void_request_id: str,
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_identity),
    schemas: SchemaRegistry = Depends(get_schema_service),
    workflow: DisputeWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    schemas.validate("remediation", payload)
    request = await workflow.choose_remediation(
        void_request_id, identity.user_id, payload["choice"]
    )
    return request.to_dict()


@app.post("/void-requests/{void_request_id}/second-bidder", tags=["disputes"])
async def respond_to_second_bidder_offer(
    void_request_id: str,
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_identity),
    schemas: SchemaRegistry = Depends(get_schema_service),
    workflow: DisputeWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    schemas.validate("second_bidder_response", payload)
    request = await workflow.respond_to_second_bidder_offer(
        void_request_id, identity.user_id, payload["action"]
    )
    return request.to_dict()


@app.post("/void-requests/{void_request_id}/close", tags=["disputes"])
async def close_unsold(
    void_request_id: str,
    identity: Identity = Depends(get_identity),
    workflow: DisputeWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    request = await workflow.close_unsold(
        void_request_id, identity.user_id, is_admin=identity.is_admin
    )
    return request.to_dict()


@app.get("/events/auctions/{auction_id}", tags=["events"])
async def auction_events(
    auction_id: str,
    request: Request,
    hub: SubscriptionHub = Depends(get_hub),
    engine: BiddingEngine = Depends(get_engine),
    settings: ServerConfig = Depends(get_server_settings),
) -> StreamingResponse:
    await engine.load_auction(auction_id)
    return StreamingResponse(
        sse_stream(
            hub,
            auction_topic(auction_id),
            heartbeat_seconds=settings.distribution.heartbeat_seconds,
            broker_connected=_broker_probe(request),
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/events/users/{user_id}", tags=["events"])
async def user_events(
    user_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    hub: SubscriptionHub = Depends(get_hub),
    settings: ServerConfig = Depends(get_server_settings),
) -> StreamingResponse:
    _require_party_or_admin(identity, {user_id})
    return StreamingResponse(
        sse_stream(
            hub,
            user_topic(user_id),
            heartbeat_seconds=settings.distribution.heartbeat_seconds,
            broker_connected=_broker_probe(request),
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


def _require_party_or_admin(identity: Identity, allowed) -> None:
    if identity.is_admin or identity.user_id in allowed:
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not permitted")


def _broker_probe(request: Request) -> Callable[[], bool] | None:
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        return None
    return lambda: relay.connected

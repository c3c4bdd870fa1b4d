"""On-demand rebuild of cached auction state from the bid ledger."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from ..auction.scheduler import AuctionScheduler
from ..collaborators import Identity, IdentityError

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_scheduler(request: Request) -> AuctionScheduler:
    return request.app.state.scheduler


def _require_admin(request: Request) -> Identity:
    try:
        identity = request.app.state.identity.identify(request.headers)
    except IdentityError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")
    return identity


@router.post("/integrity")
async def integrity(
    request: Request,
    payload: dict[str, Any] | None = Body(default=None),
    scheduler: AuctionScheduler = Depends(_get_scheduler),
    _: Identity = Depends(_require_admin),
) -> dict[str, Any]:
    payload = payload or {}
    request.app.state.schema_registry.validate("integrity_request", payload)
    auction_ids = payload.get("auction_ids")
    if auction_ids is None:
        repaired = await scheduler.sweep_integrity()
    else:
        repaired = await scheduler.verify(auction_ids)
    return {"repaired": repaired, "consistent": not repaired}

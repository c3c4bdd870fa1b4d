"""Expose currently loaded server config for debugging."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request

from ..config import ServerConfig

router = APIRouter(prefix="/admin", tags=["admin"])

_SECRET_OPTION_KEYS = ("url", "dsn", "password", "public_key", "token")


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


def _redact(options) -> dict:
    return {
        key: "***" if any(secret in key for secret in _SECRET_OPTION_KEYS) else value
        for key, value in dict(options).items()
    }


@router.get("/config")
async def config(request: Request, config: ServerConfig = Depends(_get_config)) -> dict:
    return {
        "version": request.app.version,
        "storage_backend": config.storage.backend,
        "storage_options": _redact(config.storage.options),
        "engine": asdict(config.engine),
        "distribution_backend": config.distribution.backend,
        "distribution_options": _redact(config.distribution.options),
        "subscriber_queue_size": config.distribution.subscriber_queue_size,
        "heartbeat_seconds": config.distribution.heartbeat_seconds,
        "client": asdict(config.client),
        "identity_backend": config.identity.backend,
        "listings_backend": config.listings.backend,
        "notifications_backend": config.notifications.backend,
    }

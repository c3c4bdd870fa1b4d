"""Configuration helpers for the auction service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"


@dataclass(frozen=True)
class StorageConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class EngineConfig:
    max_pending_per_auction: int
    slot_timeout_ms: int
    restart_window_seconds: int
    expiry_sweep_seconds: float
    integrity_sweep_seconds: float


@dataclass(frozen=True)
class DistributionConfig:
    backend: str
    options: Mapping[str, Any]
    subscriber_queue_size: int
    heartbeat_seconds: float


@dataclass(frozen=True)
class ClientConfig:
    reconnect_base_ms: int = 1000
    reconnect_max_ms: int = 30000
    max_reconnect_attempts: int = 10
    poll_interval_near_end_ms: int = 2000
    poll_interval_idle_ms: int = 10000
    near_end_window_seconds: int = 120


@dataclass(frozen=True)
class CollaboratorConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    storage: StorageConfig
    engine: EngineConfig
    distribution: DistributionConfig
    client: ClientConfig
    identity: CollaboratorConfig
    listings: CollaboratorConfig
    notifications: CollaboratorConfig


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def _collaborator(section: Mapping[str, Any] | None, default_backend: str) -> CollaboratorConfig:
    section = section or {}
    return CollaboratorConfig(
        backend=str(section.get("backend", default_backend)),
        options=dict(section.get("options") or {}),
    )


def build_server_config(data: Mapping[str, Any]) -> ServerConfig:
    storage = data.get("storage", {})
    engine = data.get("engine", {})
    distribution = data.get("distribution", {})
    client = data.get("client", {})
    return ServerConfig(
        listen=data.get("listen", {}),
        storage=StorageConfig(
            backend=str(storage.get("backend", "in_memory")),
            options=dict(storage.get("options") or {}),
        ),
        engine=EngineConfig(
            max_pending_per_auction=int(engine.get("max_pending_per_auction", 64)),
            slot_timeout_ms=int(engine.get("slot_timeout_ms", 2000)),
            restart_window_seconds=int(engine.get("restart_window_seconds", 86400)),
            expiry_sweep_seconds=float(engine.get("expiry_sweep_seconds", 1.0)),
            integrity_sweep_seconds=float(engine.get("integrity_sweep_seconds", 60.0)),
        ),
        distribution=DistributionConfig(
            backend=str(distribution.get("backend", "local")),
            options=dict(distribution.get("options") or {}),
            subscriber_queue_size=int(distribution.get("subscriber_queue_size", 256)),
            heartbeat_seconds=float(distribution.get("heartbeat_seconds", 30.0)),
        ),
        client=ClientConfig(
            reconnect_base_ms=int(client.get("reconnect_base_ms", 1000)),
            reconnect_max_ms=int(client.get("reconnect_max_ms", 30000)),
            max_reconnect_attempts=int(client.get("max_reconnect_attempts", 10)),
            poll_interval_near_end_ms=int(client.get("poll_interval_near_end_ms", 2000)),
            poll_interval_idle_ms=int(client.get("poll_interval_idle_ms", 10000)),
            near_end_window_seconds=int(client.get("near_end_window_seconds", 120)),
        ),
        identity=_collaborator(data.get("identity"), "headers"),
        listings=_collaborator(data.get("listings"), "in_memory"),
        notifications=_collaborator(data.get("notifications"), "log"),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    path = Path(os.getenv("LIVEBID_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))
    return build_server_config(_load_yaml(path))

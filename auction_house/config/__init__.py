"""Configuration helpers for the auction server."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"
_DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class LoggingConfig:
    level: str
    format: str


@dataclass(frozen=True)
class StorageConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class RealtimeConfig:
    backend: str
    send_timeout_ms: int
    options: Mapping[str, Any]


@dataclass(frozen=True)
class IdentityConfig:
    public_key_pem: str


@dataclass(frozen=True)
class AuctionConfig:
    default_page_size: int
    max_page_size: int
    delete_requires_open: bool


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    logging: LoggingConfig
    storage: StorageConfig
    realtime: RealtimeConfig
    identity: IdentityConfig
    auction: AuctionConfig


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def _resolve_public_key(identity: Mapping[str, Any], base_dir: Path) -> str:
    env_value = os.getenv("AUCTION_IDENTITY_PUBLIC_KEY")
    if env_value:
        return env_value
    inline = identity.get("public_key_pem")
    if inline:
        return str(inline)
    key_path = identity.get("public_key_path")
    if key_path:
        path = Path(key_path)
        if not path.is_absolute():
            path = base_dir / path
        return path.read_text()
    return ""


def load_server_config(path: Path) -> ServerConfig:
    data = _load_yaml(path)
    logging_section = data.get("logging", {})
    storage = data.get("storage", {})
    realtime = data.get("realtime", {})
    identity = data.get("identity", {})
    auction = data.get("auction", {})
    return ServerConfig(
        listen=data.get("listen", {}),
        logging=LoggingConfig(
            level=str(logging_section.get("level", "INFO")).upper(),
            format=str(logging_section.get("format", _DEFAULT_LOG_FORMAT)),
        ),
        storage=StorageConfig(
            backend=str(storage.get("backend", "in_memory")),
            options=dict(storage.get("options") or {}),
        ),
        realtime=RealtimeConfig(
            backend=str(realtime.get("backend", "local")),
            send_timeout_ms=int(realtime.get("send_timeout_ms", 250)),
            options=dict(realtime.get("options") or {}),
        ),
        identity=IdentityConfig(
            public_key_pem=_resolve_public_key(identity, path.parent),
        ),
        auction=AuctionConfig(
            default_page_size=int(auction.get("default_page_size", 20)),
            max_page_size=int(auction.get("max_page_size", 100)),
            delete_requires_open=bool(auction.get("delete_requires_open", False)),
        ),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    path = Path(os.getenv("AUCTION_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))
    return load_server_config(path)

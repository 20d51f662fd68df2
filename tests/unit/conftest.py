"""Shared fixtures: storage, recording fan-out, signing keys and the HTTP client."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio
import yaml
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)
from fastapi.testclient import TestClient

from auction_house.auction.lifecycle import AuctionLifecycle
from auction_house.auction.models import User
from auction_house.auction.service import AuctionService
from auction_house.config import get_server_config
from auction_house.identity.tokens import sign_claims
from auction_house.main import app
from auction_house.storage.in_memory import InMemoryStorage


class RecordingFanout:
    """Fan-out double that records every emitted event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str | None, str, dict[str, Any]]] = []

    async def broadcast_all(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append(("all", None, event, payload))

    async def broadcast_to_group(self, auction_id: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append(("group", auction_id, event, payload))

    async def notify_user(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append(("user", user_id, event, payload))

    def named(self, event: str) -> list[tuple[str, str | None, str, dict[str, Any]]]:
        return [entry for entry in self.events if entry[2] == event]


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def fanout() -> RecordingFanout:
    return RecordingFanout()


@pytest_asyncio.fixture
async def users(storage):
    """Owner plus two bidders, registered the way an authenticated request would."""
    registered = {
        "owner": User(id="u1", name="alice"),
        "bob": User(id="u2", name="bob"),
        "carol": User(id="u3", name="carol"),
    }
    for user in registered.values():
        await storage.ensure_user(user)
    return registered


@pytest.fixture
def service(storage, fanout) -> AuctionService:
    return AuctionService(
        storage=storage,
        fanout=fanout,
        lifecycle=AuctionLifecycle(),
        max_page_size=50,
    )


@pytest.fixture(scope="session")
def signing_key_pair() -> tuple[str, str]:
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        Encoding.PEM, PublicFormat.SubjectPublicKeyInfo
    ).decode("utf-8")
    return private_pem, public_pem


@pytest.fixture
def make_token(signing_key_pair):
    private_pem, _ = signing_key_pair

    def _make(user_id: str, name: str | None = None, **claims: Any) -> str:
        return sign_claims({"sub": user_id, "name": name or f"user-{user_id}", **claims}, private_pem)

    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(user_id: str, name: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, name)}"}

    return _headers


@pytest.fixture
def server_config_path(tmp_path, monkeypatch, signing_key_pair):
    _, public_pem = signing_key_pair
    config_path = tmp_path / "server.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "storage": {"backend": "in_memory"},
                "realtime": {"backend": "local", "send_timeout_ms": 500},
                "identity": {"public_key_pem": public_pem},
                "auction": {"default_page_size": 10, "max_page_size": 50},
            }
        )
    )
    monkeypatch.setenv("AUCTION_CONFIG_PATH", str(config_path))
    monkeypatch.delenv("AUCTION_IDENTITY_PUBLIC_KEY", raising=False)
    get_server_config.cache_clear()
    yield config_path
    get_server_config.cache_clear()


@pytest.fixture
def api_client(server_config_path):
    with TestClient(app) as client:
        yield client

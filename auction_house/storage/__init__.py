"""Storage backend factory."""

from __future__ import annotations

from typing import AsyncContextManager, Iterable, Protocol

from ..auction.models import Auction, AuctionFilter, AuctionStatus, Bid, User
from ..config import ServerConfig
from .in_memory import InMemoryStorage
from .postgres import PostgresStorage

ALL_INCLUDES = ("owner", "winner", "bids", "bidders")


class AuctionSession(Protocol):
    """Locked read-modify-write view over one auction and its bids.

    Writes become visible together when the session exits cleanly and are
    discarded if it exits with an exception.
    """

    auction: Auction

    async def save_auction(self, auction: Auction) -> None: ...

    async def add_bid(self, bid: Bid) -> None: ...

    async def delete_auction(self) -> None: ...


class AuctionStorage(Protocol):
    async def get_auction(self, auction_id: str, include: Iterable[str] = ()) -> Auction: ...

    async def list_auctions(
        self, criteria: AuctionFilter, *, skip: int, take: int
    ) -> tuple[list[Auction], int]: ...

    async def create_auction(self, auction: Auction) -> Auction: ...

    def session(self, auction_id: str) -> AsyncContextManager[AuctionSession]: ...

    async def get_user(self, user_id: str) -> User: ...

    async def ensure_user(self, user: User) -> User: ...

    async def count_by_status(self) -> dict[AuctionStatus, int]: ...

    async def close(self) -> None: ...


def build_storage(config: ServerConfig) -> AuctionStorage:
    backend = config.storage.backend
    options = dict(config.storage.options)
    if backend == "in_memory":
        return InMemoryStorage()
    if backend == "postgres":
        return PostgresStorage(**options)
    raise ValueError(f"unknown storage backend {backend}")

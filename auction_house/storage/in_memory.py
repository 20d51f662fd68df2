"""In-memory storage backend for auctions, bids and users."""

from __future__ import annotations

import asyncio
import itertools
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from copy import deepcopy
from dataclasses import replace
from typing import AsyncIterator, Iterable

from ..auction.models import Auction, AuctionFilter, AuctionStatus, Bid, User
from ..errors import NotFoundError
from .hooks import stamp_auction


class _InMemorySession:
    def __init__(self, auction: Auction) -> None:
        self.auction = auction
        self.saved: Auction | None = None
        self.new_bids: list[Bid] = []
        self.deleted = False

    async def save_auction(self, auction: Auction) -> None:
        self.saved = auction

    async def add_bid(self, bid: Bid) -> None:
        self.new_bids.append(bid)

    async def delete_auction(self) -> None:
        self.deleted = True


class InMemoryStorage:
    def __init__(self) -> None:
        self._auctions: dict[str, Auction] = {}
        self._bids: dict[str, list[Bid]] = defaultdict(list)
        self._users: dict[str, User] = {}
        self._order: dict[str, int] = {}
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()
        self._auction_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create_auction(self, auction: Auction) -> Auction:
        async with self._lock:
            stamp_auction(auction, inserting=True)
            self._auctions[auction.id] = self._strip(auction)
            self._order[auction.id] = next(self._sequence)
            return deepcopy(auction)

    async def get_auction(self, auction_id: str, include: Iterable[str] = ()) -> Auction:
        async with self._lock:
            return self._load(auction_id, set(include))

    async def list_auctions(
        self, criteria: AuctionFilter, *, skip: int, take: int
    ) -> tuple[list[Auction], int]:
        async with self._lock:
            matches = [
                auction for auction in self._auctions.values() if self._matches(auction, criteria)
            ]
            matches.sort(key=lambda a: (a.created_at, self._order[a.id]), reverse=True)
            page = matches[skip : skip + take]
            return [self._load(auction.id, {"owner"}) for auction in page], len(matches)

    @asynccontextmanager
    async def session(self, auction_id: str) -> AsyncIterator[_InMemorySession]:
        async with self._lock:
            if auction_id not in self._auctions:
                raise NotFoundError(f"auction {auction_id} not found")
            auction_lock = self._auction_locks[auction_id]
        async with auction_lock:
            async with self._lock:
                try:
                    snapshot = self._load(auction_id, {"bids"})
                except NotFoundError:
                    # deleted while this session waited for the lock
                    self._auction_locks.pop(auction_id, None)
                    raise
            session = _InMemorySession(snapshot)
            yield session
            async with self._lock:
                self._commit(auction_id, session)

    async def get_user(self, user_id: str) -> User:
        async with self._lock:
            try:
                return self._users[user_id]
            except KeyError as exc:
                raise NotFoundError(f"user {user_id} not found") from exc

    async def ensure_user(self, user: User) -> User:
        async with self._lock:
            self._users[user.id] = user
            return user

    async def count_by_status(self) -> dict[AuctionStatus, int]:
        async with self._lock:
            return dict(Counter(auction.status for auction in self._auctions.values()))

    async def close(self) -> None:
        return None

    def _commit(self, auction_id: str, session: _InMemorySession) -> None:
        if session.deleted:
            self._auctions.pop(auction_id, None)
            self._bids.pop(auction_id, None)
            self._order.pop(auction_id, None)
            self._auction_locks.pop(auction_id, None)
            return
        if session.saved is not None:
            stamp_auction(session.saved, inserting=False)
            self._auctions[auction_id] = self._strip(session.saved)
        self._bids[auction_id].extend(replace(bid, bidder=None) for bid in session.new_bids)

    def _load(self, auction_id: str, include: set[str]) -> Auction:
        try:
            stored = self._auctions[auction_id]
        except KeyError as exc:
            raise NotFoundError(f"auction {auction_id} not found") from exc
        auction = deepcopy(stored)
        if "owner" in include:
            auction.owner = self._users.get(auction.owner_id)
        if "winner" in include and auction.winner_id:
            auction.winner = self._users.get(auction.winner_id)
        if "bids" in include or "bidders" in include:
            bids = list(self._bids.get(auction_id, []))
            if "bidders" in include:
                bids = [replace(bid, bidder=self._users.get(bid.bidder_id)) for bid in bids]
            auction.bids = bids
        return auction

    def _matches(self, auction: Auction, criteria: AuctionFilter) -> bool:
        if criteria.status is not None and auction.status != criteria.status:
            return False
        if criteria.owner_id is not None and auction.owner_id != criteria.owner_id:
            return False
        if criteria.bidder_id is not None:
            bids = self._bids.get(auction.id, [])
            if not any(bid.bidder_id == criteria.bidder_id for bid in bids):
                return False
        return True

    @staticmethod
    def _strip(auction: Auction) -> Auction:
        return replace(deepcopy(auction), bids=[], owner=None, winner=None)

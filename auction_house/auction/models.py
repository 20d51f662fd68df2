"""Shared auction data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class AuctionStatus(str, Enum):
    OPEN = "Open"
    CLOSING = "Closing"
    SOLD = "Sold"
    DELETED = "Deleted"


@dataclass(frozen=True)
class User:
    id: str
    name: str


@dataclass(frozen=True)
class Bid:
    id: str
    auction_id: str
    bidder_id: str
    amount: Decimal
    placed_at: datetime
    bidder: User | None = None


@dataclass
class Auction:
    id: str
    title: str
    description: str
    owner_id: str
    status: AuctionStatus = AuctionStatus.OPEN
    image_url: str | None = None
    winner_id: str | None = None
    price: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    bids: list[Bid] = field(default_factory=list)
    owner: User | None = None
    winner: User | None = None

    def find_bid(self, bid_id: str) -> Bid | None:
        return next((bid for bid in self.bids if bid.id == bid_id), None)


@dataclass(frozen=True)
class AuctionFilter:
    """Criteria for paged auction queries; unset fields do not filter."""

    status: AuctionStatus | None = None
    owner_id: str | None = None
    bidder_id: str | None = None


@dataclass(frozen=True)
class Page:
    items: list[Auction]
    total_count: int
    page_number: int
    page_size: int

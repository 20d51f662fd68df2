"""Response shaping for auctions, bids, pages and realtime payloads."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from .models import Auction, Bid, Page

NEW_AUCTION = "NewAuctionNotification"
STATUS_UPDATE = "AuctionStatusUpdate"
BID_UPDATE = "BidUpdate"
OUTBID = "OutbidNotification"


def format_money(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return format(value, "f")


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def auction_summary(auction: Auction) -> dict[str, Any]:
    return {
        "id": auction.id,
        "title": auction.title,
        "description": auction.description,
        "status": auction.status.value,
        "image_url": auction.image_url,
        "owner_id": auction.owner_id,
        "owner_name": auction.owner.name if auction.owner else None,
        "winner_id": auction.winner_id,
        "winner_name": auction.winner.name if auction.winner else None,
        "price": format_money(auction.price),
        "created_at": format_timestamp(auction.created_at),
        "updated_at": format_timestamp(auction.updated_at),
    }


def auction_detail(auction: Auction) -> dict[str, Any]:
    detail = auction_summary(auction)
    detail["bids"] = [bid_detail(bid) for bid in reversed(auction.bids)]
    return detail


def bid_detail(bid: Bid) -> dict[str, Any]:
    return {
        "id": bid.id,
        "auction_id": bid.auction_id,
        "user_id": bid.bidder_id,
        "user_name": bid.bidder.name if bid.bidder else None,
        "amount": format_money(bid.amount),
        "placed_at": format_timestamp(bid.placed_at),
    }


def paged_result(page: Page) -> dict[str, Any]:
    return {
        "items": [auction_summary(auction) for auction in page.items],
        "total_count": page.total_count,
        "page_number": page.page_number,
        "page_size": page.page_size,
    }


def new_auction_payload(auction: Auction) -> dict[str, Any]:
    return {"auction_id": auction.id, "title": auction.title}


def status_update_payload(auction: Auction) -> dict[str, Any]:
    return {"auction_id": auction.id, "status": auction.status.value}


def bid_update_payload(bid: Bid, current_price: Decimal | None) -> dict[str, Any]:
    payload = bid_detail(bid)
    payload["current_price"] = format_money(current_price)
    return payload


def outbid_payload(auction: Auction, new_amount: Decimal) -> dict[str, Any]:
    return {
        "auction_id": auction.id,
        "title": auction.title,
        "new_amount": format_money(new_amount),
    }

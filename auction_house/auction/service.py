"""Auction service orchestrating storage, lifecycle rules and notifications."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable

from ..errors import NotFoundError, PersistenceError, ValidationError
from ..realtime.fanout import NotificationFanout
from ..storage import ALL_INCLUDES, AuctionStorage
from ..storage.hooks import utcnow
from . import views
from .lifecycle import AuctionLifecycle
from .models import Auction, AuctionFilter, AuctionStatus, Bid, Page, User

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("10") ** 16


def parse_amount(value: Any) -> Decimal:
    """Coerce a bid amount to a positive ``Decimal`` in whole cents."""
    if isinstance(value, bool) or value is None:
        raise ValidationError("amount must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("amount must be a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount must be greater than zero")
    if amount >= MAX_AMOUNT:
        raise ValidationError(f"amount must be less than {MAX_AMOUNT:f}")
    cents = amount.quantize(CENT)
    if cents != amount:
        raise ValidationError("amount must not have more than two decimal places")
    return cents


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


@dataclass
class AuctionService:
    """Use-case entry points.

    Every state change runs inside one storage session, so concurrent bids on
    the same auction serialize and price recomputation always sees every
    committed bid. Notifications go out only after the session commits and a
    delivery failure never turns a committed change into an error.
    """

    storage: AuctionStorage
    fanout: NotificationFanout
    lifecycle: AuctionLifecycle = field(default_factory=AuctionLifecycle)
    max_page_size: int = 100
    send_timeout_ms: int = 250

    # Queries -----------------------------------------------------------------

    async def list_open_auctions(self, page: int, page_size: int) -> Page:
        return await self._list(AuctionFilter(status=AuctionStatus.OPEN), page, page_size)

    async def list_by_owner(self, user_id: str, page: int, page_size: int) -> Page:
        user_id = _require_text(user_id, "user_id")
        return await self._list(AuctionFilter(owner_id=user_id), page, page_size)

    async def list_participated_in(self, user_id: str, page: int, page_size: int) -> Page:
        user_id = _require_text(user_id, "user_id")
        return await self._list(AuctionFilter(bidder_id=user_id), page, page_size)

    async def get_auction(self, auction_id: str) -> Auction:
        return await self.storage.get_auction(auction_id, include=ALL_INCLUDES)

    async def get_bids(self, auction_id: str) -> list[Bid]:
        auction = await self.storage.get_auction(auction_id, include=("bidders",))
        return list(reversed(auction.bids))

    # Commands ----------------------------------------------------------------

    async def create_auction(
        self,
        owner_id: str,
        title: Any,
        description: Any,
        image_url: str | None = None,
    ) -> Auction:
        auction = Auction(
            id=str(uuid.uuid4()),
            title=_require_text(title, "title"),
            description=_require_text(description, "description"),
            owner_id=_require_text(owner_id, "owner_id"),
            image_url=image_url or None,
        )
        created = await self.storage.create_auction(auction)
        created.owner = await self._lookup_user(created.owner_id)
        logger.info("auction %s created by %s", created.id, created.owner_id)
        await self._emit(
            f"new auction {created.id}",
            self.fanout.broadcast_all(views.NEW_AUCTION, views.new_auction_payload(created)),
        )
        return created

    async def place_bid(self, auction_id: str, bidder_id: str, amount: Any) -> Bid:
        value = parse_amount(amount)
        async with self.storage.session(auction_id) as session:
            auction = session.auction
            bid, evaluation = self.lifecycle.place_bid(auction, bidder_id, value, utcnow())
            await session.add_bid(bid)
            await session.save_auction(auction)
        bid = replace(bid, bidder=await self._lookup_user(bidder_id))
        logger.info(
            "bid %s of %s on auction %s by %s (price now %s)",
            bid.id,
            value,
            auction.id,
            bidder_id,
            evaluation.new_current_price,
        )
        await self._emit(
            f"bid update {auction.id}",
            self.fanout.broadcast_to_group(
                auction.id,
                views.BID_UPDATE,
                views.bid_update_payload(bid, evaluation.new_current_price),
            ),
        )
        if evaluation.outbid is not None:
            await self._emit(
                f"outbid notice to {evaluation.outbid.user_id}",
                self.fanout.notify_user(
                    evaluation.outbid.user_id,
                    views.OUTBID,
                    views.outbid_payload(auction, value),
                ),
            )
        return bid

    async def close_auction(self, auction_id: str, actor_id: str) -> Auction:
        async with self.storage.session(auction_id) as session:
            auction = session.auction
            self.lifecycle.close(auction, actor_id)
            await session.save_auction(auction)
        logger.info("auction %s closed by %s", auction.id, actor_id)
        await self._broadcast_status(auction)
        return auction

    async def sell_auction(self, auction_id: str, actor_id: str, winning_bid_id: Any) -> Auction:
        winning_bid_id = _require_text(winning_bid_id, "winning_bid_id")
        async with self.storage.session(auction_id) as session:
            auction = session.auction
            winning_bid = self.lifecycle.sell(auction, actor_id, winning_bid_id)
            await session.save_auction(auction)
        auction.winner = await self._lookup_user(winning_bid.bidder_id)
        logger.info(
            "auction %s sold to %s for %s", auction.id, winning_bid.bidder_id, winning_bid.amount
        )
        await self._broadcast_status(auction)
        return auction

    async def delete_auction(self, auction_id: str, actor_id: str) -> None:
        async with self.storage.session(auction_id) as session:
            auction = session.auction
            previous_status = auction.status
            self.lifecycle.delete(auction, actor_id)
            await session.delete_auction()
        logger.info(
            "auction %s deleted by %s (was %s, %d bids)",
            auction.id,
            actor_id,
            previous_status.value,
            len(auction.bids),
        )

    # Helpers -----------------------------------------------------------------

    async def _list(self, criteria: AuctionFilter, page: int, page_size: int) -> Page:
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError("page must be an integer >= 1")
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size < 1:
            raise ValidationError("page_size must be an integer >= 1")
        if page_size > self.max_page_size:
            raise ValidationError(f"page_size must not exceed {self.max_page_size}")
        items, total = await self.storage.list_auctions(
            criteria, skip=(page - 1) * page_size, take=page_size
        )
        return Page(items=items, total_count=total, page_number=page, page_size=page_size)

    async def _lookup_user(self, user_id: str) -> User | None:
        try:
            return await self.storage.get_user(user_id)
        except NotFoundError:
            return None
        except PersistenceError as exc:
            logger.warning("could not load user %s: %s", user_id, exc)
            return None

    async def _broadcast_status(self, auction: Auction) -> None:
        await self._emit(
            f"status update {auction.id}",
            self.fanout.broadcast_to_group(
                auction.id, views.STATUS_UPDATE, views.status_update_payload(auction)
            ),
        )

    async def _emit(self, description: str, delivery: Awaitable[None]) -> None:
        try:
            await asyncio.wait_for(delivery, timeout=self.send_timeout_ms / 1000)
        except Exception as exc:
            logger.warning("notification failed (%s): %r", description, exc)

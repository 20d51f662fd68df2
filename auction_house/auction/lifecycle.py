"""Auction lifecycle finite state machine."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from ..errors import AuthorizationError, NotFoundError, StateConflictError
from .evaluator import BidEvaluation, evaluate
from .models import Auction, AuctionStatus, Bid


class AuctionEvent(str, Enum):
    PLACE_BID = "place_bid"
    CLOSE = "close"
    SELL = "sell"
    DELETE = "delete"


_TRANSITIONS = {
    (AuctionStatus.OPEN, AuctionEvent.PLACE_BID): AuctionStatus.OPEN,
    (AuctionStatus.OPEN, AuctionEvent.CLOSE): AuctionStatus.CLOSING,
    (AuctionStatus.CLOSING, AuctionEvent.SELL): AuctionStatus.SOLD,
    (AuctionStatus.OPEN, AuctionEvent.DELETE): AuctionStatus.DELETED,
}

_LENIENT_DELETE = {
    (AuctionStatus.CLOSING, AuctionEvent.DELETE): AuctionStatus.DELETED,
    (AuctionStatus.SOLD, AuctionEvent.DELETE): AuctionStatus.DELETED,
}

_CONFLICT_MESSAGES = {
    AuctionEvent.PLACE_BID: "auction is not open for bidding",
    AuctionEvent.CLOSE: "auction is not in Open state",
    AuctionEvent.SELL: "auction is not in Closing state",
    AuctionEvent.DELETE: "auction can no longer be deleted",
}


def transition(
    current: AuctionStatus,
    event: AuctionEvent,
    *,
    lenient_delete: bool = False,
) -> AuctionStatus:
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        pass
    if lenient_delete:
        try:
            return _LENIENT_DELETE[(current, event)]
        except KeyError:
            pass
    raise StateConflictError(
        f"{_CONFLICT_MESSAGES[event]} (status={current.value}, event={event.value})"
    )


class AuctionLifecycle:
    """Guards every auction transition with ownership and status checks.

    Authorization is checked before status, so a forbidden actor is always
    reported as such regardless of where the auction is in its lifecycle.
    Methods mutate the given auction in place; persisting it is the caller's
    job.
    """

    def __init__(self, *, delete_requires_open: bool = False) -> None:
        self._delete_requires_open = delete_requires_open

    def place_bid(
        self,
        auction: Auction,
        bidder_id: str,
        amount: Decimal,
        now: datetime,
    ) -> tuple[Bid, BidEvaluation]:
        if auction.owner_id == bidder_id:
            raise AuthorizationError("owner cannot bid on their own auction")
        auction.status = transition(auction.status, AuctionEvent.PLACE_BID)
        evaluation = evaluate(auction.bids, amount, bidder_id)
        bid = Bid(
            id=str(uuid.uuid4()),
            auction_id=auction.id,
            bidder_id=bidder_id,
            amount=amount,
            placed_at=now,
        )
        auction.bids.append(bid)
        auction.price = evaluation.new_current_price
        return bid, evaluation

    def close(self, auction: Auction, actor_id: str) -> None:
        self._require_owner(auction, actor_id, "close")
        auction.status = transition(auction.status, AuctionEvent.CLOSE)

    def sell(self, auction: Auction, actor_id: str, winning_bid_id: str) -> Bid:
        self._require_owner(auction, actor_id, "sell")
        new_status = transition(auction.status, AuctionEvent.SELL)
        winning_bid = auction.find_bid(winning_bid_id)
        if winning_bid is None:
            raise NotFoundError(f"bid {winning_bid_id} does not belong to auction {auction.id}")
        auction.status = new_status
        auction.winner_id = winning_bid.bidder_id
        auction.price = winning_bid.amount
        return winning_bid

    def delete(self, auction: Auction, actor_id: str) -> None:
        self._require_owner(auction, actor_id, "delete")
        auction.status = transition(
            auction.status,
            AuctionEvent.DELETE,
            lenient_delete=not self._delete_requires_open,
        )

    def _require_owner(self, auction: Auction, actor_id: str, action: str) -> None:
        if auction.owner_id != actor_id:
            raise AuthorizationError(f"only the owner may {action} this auction")

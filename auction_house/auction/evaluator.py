"""Bid evaluation: current price and outbid detection over a bid history."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Sequence

from .models import Bid

ZERO = Decimal("0")


@dataclass(frozen=True)
class OutbidTarget:
    user_id: str
    previous_amount: Decimal


@dataclass(frozen=True)
class BidEvaluation:
    accepted: bool
    new_current_price: Decimal
    outbid: OutbidTarget | None = None


def leading_bid(bids: Iterable[Bid]) -> Bid | None:
    """Return the earliest bid holding the maximum amount."""
    leader: Bid | None = None
    for bid in bids:
        if leader is None or bid.amount > leader.amount:
            leader = bid
    return leader


def current_price(bids: Iterable[Bid]) -> Decimal | None:
    leader = leading_bid(bids)
    return leader.amount if leader else None


def evaluate(existing_bids: Sequence[Bid], new_amount: Decimal, bidder_id: str) -> BidEvaluation:
    # Every submitted bid is stored, so the price is the running maximum
    # rather than the latest amount.
    leader = leading_bid(existing_bids)
    current_max = leader.amount if leader else ZERO
    outbid = None
    if leader is not None and new_amount > current_max and leader.bidder_id != bidder_id:
        outbid = OutbidTarget(user_id=leader.bidder_id, previous_amount=leader.amount)
    return BidEvaluation(
        accepted=True,
        new_current_price=max(current_max, new_amount),
        outbid=outbid,
    )

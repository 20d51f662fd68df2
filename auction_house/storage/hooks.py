"""Pre-commit hooks applied by every storage backend on its save path."""

from __future__ import annotations

from datetime import datetime, timezone

from ..auction.models import Auction


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def stamp_auction(auction: Auction, *, inserting: bool, now: datetime | None = None) -> Auction:
    """On insert set created/updated; on update set updated."""
    now = now or utcnow()
    if inserting:
        auction.created_at = now
    auction.updated_at = now
    return auction

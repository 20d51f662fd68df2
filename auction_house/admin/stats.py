"""Operational stats endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from ..auction.models import AuctionStatus
from ..realtime.hub import ConnectionHub
from ..storage import AuctionStorage

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_storage(request: Request) -> AuctionStorage:
    return request.app.state.storage


def _get_hub(request: Request) -> ConnectionHub:
    return request.app.state.hub


@router.get("/stats")
async def stats(
    storage: AuctionStorage = Depends(_get_storage),
    hub: ConnectionHub = Depends(_get_hub),
) -> dict[str, Any]:
    counts = await storage.count_by_status()
    auctions_by_status = {
        auction_status.value: counts.get(auction_status, 0)
        for auction_status in AuctionStatus
        if auction_status is not AuctionStatus.DELETED
    }
    return {
        "total_auctions": sum(auctions_by_status.values()),
        "auctions_by_status": auctions_by_status,
        "subscribers": await hub.snapshot(),
    }

"""Tests for the auction service facade over in-memory storage."""

from __future__ import annotations

import asyncio
import math
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from auction_house.auction import views
from auction_house.auction.lifecycle import AuctionLifecycle
from auction_house.auction.models import AuctionStatus
from auction_house.auction.service import AuctionService
from auction_house.errors import (
    AuthorizationError,
    NotFoundError,
    PersistenceError,
    StateConflictError,
    ValidationError,
)


async def _create(service, owner="u1", title="Vintage camera"):
    return await service.create_auction(owner, title, "Working condition")


class TestScenario:
    @pytest.mark.asyncio
    async def test_full_auction_lifecycle(self, service, storage, fanout, users):
        auction = await _create(service)
        assert auction.status is AuctionStatus.OPEN
        assert auction.price is None

        await service.place_bid(auction.id, "u2", 100)
        stored = await storage.get_auction(auction.id)
        assert stored.price == Decimal("100")
        assert fanout.named(views.OUTBID) == []

        winning = await service.place_bid(auction.id, "u3", 150)
        stored = await storage.get_auction(auction.id)
        assert stored.price == Decimal("150")
        outbids = fanout.named(views.OUTBID)
        assert len(outbids) == 1
        scope, target, _, payload = outbids[0]
        assert (scope, target) == ("user", "u2")
        assert payload == {"auction_id": auction.id, "title": "Vintage camera", "new_amount": "150.00"}

        with pytest.raises(AuthorizationError):
            await service.place_bid(auction.id, "u1", 500)

        closed = await service.close_auction(auction.id, "u1")
        assert closed.status is AuctionStatus.CLOSING

        sold = await service.sell_auction(auction.id, "u1", winning.id)
        assert sold.status is AuctionStatus.SOLD
        assert sold.winner_id == "u3"
        assert sold.price == Decimal("150")

        detail = await service.get_auction(auction.id)
        assert detail.owner.name == "alice"
        assert detail.winner.name == "carol"
        assert [bid.amount for bid in detail.bids] == [Decimal("100"), Decimal("150")]

        statuses = [entry[3]["status"] for entry in fanout.named(views.STATUS_UPDATE)]
        assert statuses == ["Closing", "Sold"]


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_broadcasts_to_everyone(self, service, fanout, users):
        auction = await _create(service)

        assert auction.owner.name == "alice"
        assert auction.created_at is not None
        assert auction.created_at == auction.updated_at
        assert fanout.named(views.NEW_AUCTION) == [
            ("all", None, views.NEW_AUCTION, {"auction_id": auction.id, "title": "Vintage camera"})
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("title, description", [("", "x"), ("  ", "x"), ("t", ""), (None, "x")])
    async def test_required_fields(self, service, fanout, title, description):
        with pytest.raises(ValidationError):
            await service.create_auction("u1", title, description)
        assert fanout.events == []


class TestBidding:
    @pytest.mark.asyncio
    async def test_lower_bid_is_stored_but_price_unchanged(self, service, storage, users):
        auction = await _create(service)
        await service.place_bid(auction.id, "u2", 200)

        low = await service.place_bid(auction.id, "u3", "150.50")

        stored = await storage.get_auction(auction.id, include=("bids",))
        assert stored.price == Decimal("200")
        assert [bid.id for bid in stored.bids][-1] == low.id
        assert low.amount == Decimal("150.50")

    @pytest.mark.asyncio
    async def test_outbid_once_per_strict_raise_never_to_self(self, service, fanout, users):
        auction = await _create(service)
        for bidder, amount in [("u2", 100), ("u3", 150), ("u2", 120), ("u2", 200), ("u2", 250)]:
            await service.place_bid(auction.id, bidder, amount)

        notices = [(target, payload["new_amount"]) for _, target, _, payload in fanout.named(views.OUTBID)]
        assert notices == [("u2", "150.00"), ("u3", "200.00")]

    @pytest.mark.asyncio
    async def test_bid_update_goes_to_auction_group(self, service, fanout, users):
        auction = await _create(service)
        bid = await service.place_bid(auction.id, "u2", 75)

        updates = fanout.named(views.BID_UPDATE)
        assert len(updates) == 1
        scope, target, _, payload = updates[0]
        assert (scope, target) == ("group", auction.id)
        assert payload["id"] == bid.id
        assert payload["user_name"] == "bob"
        assert payload["current_price"] == "75.00"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount",
        [0, -1, "0", "abc", None, True, "NaN", "Infinity", "0.001", "100.005", 1e20, "10000000000000000"],
    )
    async def test_invalid_amounts(self, service, users, amount):
        auction = await _create(service)
        with pytest.raises(ValidationError):
            await service.place_bid(auction.id, "u2", amount)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount, stored",
        [(100, "100.00"), ("100.5", "100.50"), (12.25, "12.25"), ("9999999999999999.99", "9999999999999999.99")],
    )
    async def test_amounts_are_kept_in_whole_cents(self, service, fanout, users, amount, stored):
        auction = await _create(service)

        bid = await service.place_bid(auction.id, "u2", amount)

        assert bid.amount == Decimal(stored)
        assert bid.amount.as_tuple().exponent == -2
        assert fanout.named(views.BID_UPDATE)[0][3]["amount"] == stored

    @pytest.mark.asyncio
    async def test_bid_on_unknown_auction(self, service):
        with pytest.raises(NotFoundError):
            await service.place_bid("missing", "u2", 10)

    @pytest.mark.asyncio
    async def test_bid_on_closing_auction_conflicts(self, service, storage, users):
        auction = await _create(service)
        await service.close_auction(auction.id, "u1")

        with pytest.raises(StateConflictError):
            await service.place_bid(auction.id, "u2", 10)
        stored = await storage.get_auction(auction.id, include=("bids",))
        assert stored.bids == []
        assert stored.price is None

    @pytest.mark.asyncio
    async def test_concurrent_bids_keep_running_maximum(self, service, storage, users):
        auction = await _create(service)
        amounts = [37, 5, 91, 12, 64, 91, 3, 88, 45, 70, 1, 90]

        await asyncio.gather(
            *(
                service.place_bid(auction.id, "u2" if index % 2 else "u3", amount)
                for index, amount in enumerate(amounts)
            )
        )

        stored = await storage.get_auction(auction.id, include=("bids",))
        assert len(stored.bids) == len(amounts)
        assert stored.price == Decimal("91")

    @pytest.mark.asyncio
    async def test_get_bids_newest_first(self, service, users):
        auction = await _create(service)
        first = await service.place_bid(auction.id, "u2", 10)
        second = await service.place_bid(auction.id, "u3", 5)

        bids = await service.get_bids(auction.id)

        assert [bid.id for bid in bids] == [second.id, first.id]
        assert bids[0].bidder.name == "carol"


class TestNotificationFailures:
    @pytest.mark.asyncio
    async def test_failed_delivery_does_not_fail_bid(self, storage, users):
        fanout = AsyncMock()
        fanout.broadcast_to_group.side_effect = ConnectionError("hub down")
        fanout.notify_user.side_effect = ConnectionError("hub down")
        service = AuctionService(storage=storage, fanout=fanout, lifecycle=AuctionLifecycle())

        auction = await service.create_auction("u1", "Clock", "Ticks")
        await service.place_bid(auction.id, "u2", 10)
        await service.place_bid(auction.id, "u3", 20)

        stored = await storage.get_auction(auction.id, include=("bids",))
        assert stored.price == Decimal("20")
        assert len(stored.bids) == 2
        fanout.notify_user.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_slow_delivery_is_bounded(self, storage, users):
        async def stall(*args, **kwargs):
            await asyncio.sleep(5)

        fanout = AsyncMock()
        fanout.broadcast_to_group.side_effect = stall
        service = AuctionService(
            storage=storage, fanout=fanout, lifecycle=AuctionLifecycle(), send_timeout_ms=20
        )
        auction = await service.create_auction("u1", "Clock", "Ticks")

        closed = await asyncio.wait_for(service.close_auction(auction.id, "u1"), timeout=1)

        assert closed.status is AuctionStatus.CLOSING
        assert (await storage.get_auction(auction.id)).status is AuctionStatus.CLOSING


    @pytest.mark.asyncio
    async def test_display_name_lookup_failure_after_commit(
        self, service, storage, fanout, users, monkeypatch
    ):
        auction = await _create(service)
        monkeypatch.setattr(storage, "get_user", AsyncMock(side_effect=PersistenceError("db down")))

        bid = await service.place_bid(auction.id, "u2", 10)
        await service.close_auction(auction.id, "u1")
        sold = await service.sell_auction(auction.id, "u1", bid.id)

        assert bid.bidder is None
        assert sold.status is AuctionStatus.SOLD
        assert sold.winner is None
        assert (await storage.get_auction(auction.id)).winner_id == "u2"
        assert fanout.named(views.BID_UPDATE)[0][3]["user_name"] is None


class TestCloseSellDelete:
    @pytest.mark.asyncio
    async def test_sell_requires_closing(self, service, users):
        auction = await _create(service)
        bid = await service.place_bid(auction.id, "u2", 10)

        with pytest.raises(StateConflictError):
            await service.sell_auction(auction.id, "u1", bid.id)

    @pytest.mark.asyncio
    async def test_sell_with_bid_from_another_auction(self, service, storage, users):
        first = await _create(service, title="First")
        second = await _create(service, title="Second")
        foreign = await service.place_bid(second.id, "u2", 10)
        await service.close_auction(first.id, "u1")

        with pytest.raises(NotFoundError):
            await service.sell_auction(first.id, "u1", foreign.id)
        assert (await storage.get_auction(first.id)).status is AuctionStatus.CLOSING

    @pytest.mark.asyncio
    async def test_only_owner_closes(self, service, fanout, users):
        auction = await _create(service)
        with pytest.raises(AuthorizationError):
            await service.close_auction(auction.id, "u2")
        assert fanout.named(views.STATUS_UPDATE) == []

    @pytest.mark.asyncio
    async def test_close_updates_timestamp(self, service, storage, users):
        auction = await _create(service)
        closed = await service.close_auction(auction.id, "u1")
        stored = await storage.get_auction(auction.id)
        assert stored.updated_at >= auction.created_at
        assert stored.created_at == auction.created_at
        assert closed.status is stored.status

    @pytest.mark.asyncio
    async def test_delete_with_bids_is_permitted_by_default(self, service, users):
        # Deletion does not consult the bidding state unless configured to.
        auction = await _create(service)
        await service.place_bid(auction.id, "u2", 10)
        await service.close_auction(auction.id, "u1")

        await service.delete_auction(auction.id, "u1")

        with pytest.raises(NotFoundError):
            await service.get_auction(auction.id)
        assert (await service.list_participated_in("u2", 1, 10)).total_count == 0

    @pytest.mark.asyncio
    async def test_strict_delete_refuses_closing(self, storage, fanout, users):
        service = AuctionService(
            storage=storage, fanout=fanout, lifecycle=AuctionLifecycle(delete_requires_open=True)
        )
        auction = await _create(service)
        await service.close_auction(auction.id, "u1")

        with pytest.raises(StateConflictError):
            await service.delete_auction(auction.id, "u1")
        assert (await service.get_auction(auction.id)).status is AuctionStatus.CLOSING

    @pytest.mark.asyncio
    async def test_only_owner_deletes(self, service, users):
        auction = await _create(service)
        with pytest.raises(AuthorizationError):
            await service.delete_auction(auction.id, "u2")
        assert (await service.get_auction(auction.id)).status is AuctionStatus.OPEN


class TestListing:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("total, page_size", [(7, 3), (6, 3), (1, 5), (10, 1)])
    async def test_pages_partition_open_auctions_newest_first(self, service, users, total, page_size):
        created = [await _create(service, title=f"Lot {index}") for index in range(total)]

        seen = []
        for page_number in range(1, math.ceil(total / page_size) + 1):
            page = await service.list_open_auctions(page_number, page_size)
            assert page.total_count == total
            assert page.page_number == page_number
            assert len(page.items) <= page_size
            seen.extend(item.id for item in page.items)

        assert seen == [auction.id for auction in reversed(created)]
        beyond = await service.list_open_auctions(math.ceil(total / page_size) + 1, page_size)
        assert beyond.items == []

    @pytest.mark.asyncio
    async def test_open_listing_excludes_other_statuses(self, service, users):
        open_auction = await _create(service, title="Open")
        closing = await _create(service, title="Closing")
        await service.close_auction(closing.id, "u1")

        page = await service.list_open_auctions(1, 10)

        assert [item.id for item in page.items] == [open_auction.id]
        assert page.items[0].owner.name == "alice"

    @pytest.mark.asyncio
    async def test_by_owner_and_participation(self, service, users):
        mine = await _create(service, owner="u1")
        theirs = await _create(service, owner="u2")
        await service.place_bid(mine.id, "u3", 5)
        await service.place_bid(mine.id, "u3", 6)
        await service.place_bid(theirs.id, "u3", 7)
        await service.close_auction(theirs.id, "u2")

        owned = await service.list_by_owner("u2", 1, 10)
        participated = await service.list_participated_in("u3", 1, 10)

        assert [item.id for item in owned.items] == [theirs.id]
        assert participated.total_count == 2
        assert [item.id for item in participated.items] == [theirs.id, mine.id]
        assert (await service.list_participated_in("u1", 1, 10)).total_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page, page_size", [(0, 10), (1, 0), (-1, 5), (1, 51), ("1", 5)])
    async def test_invalid_paging(self, service, page, page_size):
        with pytest.raises(ValidationError):
            await service.list_open_auctions(page, page_size)


@pytest.mark.parametrize(
    "value, expected",
    [
        (Decimal("1E+20"), "100000000000000000000"),
        (Decimal("1.5E-7"), "0.00000015"),
        (Decimal("150.50"), "150.50"),
        (None, None),
    ],
)
def test_money_is_rendered_without_exponent(value, expected):
    assert views.format_money(value) == expected

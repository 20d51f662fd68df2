"""Postgres storage backend leveraging asyncpg."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

import asyncpg

from ..auction.models import Auction, AuctionFilter, AuctionStatus, Bid, User
from ..errors import NotFoundError, PersistenceError
from .hooks import stamp_auction

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS auctions (
    id TEXT PRIMARY KEY,
    seq BIGSERIAL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    image_url TEXT,
    status TEXT NOT NULL,
    owner_id TEXT NOT NULL REFERENCES users(id),
    winner_id TEXT REFERENCES users(id),
    price NUMERIC(18, 2),
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_auctions_status_created
ON auctions (status, created_at DESC, seq DESC);
CREATE TABLE IF NOT EXISTS bids (
    id TEXT PRIMARY KEY,
    seq BIGSERIAL,
    auction_id TEXT NOT NULL REFERENCES auctions(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES users(id),
    amount NUMERIC(18, 2) NOT NULL,
    placed_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bids_auction ON bids (auction_id, placed_at, seq);
CREATE INDEX IF NOT EXISTS idx_bids_user ON bids (user_id);
"""

_AUCTION_COLUMNS = (
    "a.id, a.title, a.description, a.image_url, a.status, a.owner_id, a.winner_id, "
    "a.price, a.created_at, a.updated_at"
)


def _auction_from_row(row: Any) -> Auction:
    return Auction(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        image_url=row["image_url"],
        status=AuctionStatus(row["status"]),
        owner_id=row["owner_id"],
        winner_id=row["winner_id"],
        price=row["price"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _bid_from_row(row: Any, bidder: User | None = None) -> Bid:
    return Bid(
        id=row["id"],
        auction_id=row["auction_id"],
        bidder_id=row["user_id"],
        amount=row["amount"],
        placed_at=row["placed_at"],
        bidder=bidder,
    )


class _PostgresSession:
    """Writes go straight to the open transaction; commit happens on exit."""

    def __init__(self, conn: asyncpg.Connection, auction: Auction) -> None:
        self._conn = conn
        self.auction = auction

    async def save_auction(self, auction: Auction) -> None:
        stamp_auction(auction, inserting=False)
        await self._conn.execute(
            """UPDATE auctions
               SET title=$2, description=$3, image_url=$4, status=$5,
                   winner_id=$6, price=$7, updated_at=$8
               WHERE id=$1""",
            auction.id,
            auction.title,
            auction.description,
            auction.image_url,
            auction.status.value,
            auction.winner_id,
            auction.price,
            auction.updated_at,
        )

    async def add_bid(self, bid: Bid) -> None:
        await self._conn.execute(
            """INSERT INTO bids(id, auction_id, user_id, amount, placed_at)
               VALUES($1, $2, $3, $4, $5)""",
            bid.id,
            bid.auction_id,
            bid.bidder_id,
            bid.amount,
            bid.placed_at,
        )

    async def delete_auction(self) -> None:
        await self._conn.execute("DELETE FROM auctions WHERE id=$1", self.auction.id)


class PostgresStorage:
    def __init__(self, *, dsn: str | None = None, **connect_kwargs: Any) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._connect_kwargs = connect_kwargs
        self._pool: asyncpg.Pool | None = None

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
                async with self._pool.acquire() as conn:
                    await conn.execute(_SCHEMA)
                logger.info("postgres pool ready, schema ensured")
            except (OSError, asyncpg.PostgresError) as exc:
                self._pool = None
                raise PersistenceError(f"postgres unavailable: {exc}") from exc
        return self._pool

    async def create_auction(self, auction: Auction) -> Auction:
        stamp_auction(auction, inserting=True)
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """INSERT INTO auctions(id, title, description, image_url, status,
                                            owner_id, winner_id, price, created_at, updated_at)
                       VALUES($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)""",
                    auction.id,
                    auction.title,
                    auction.description,
                    auction.image_url,
                    auction.status.value,
                    auction.owner_id,
                    auction.winner_id,
                    auction.price,
                    auction.created_at,
                    auction.updated_at,
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(str(exc)) from exc
        return auction

    async def get_auction(self, auction_id: str, include: Iterable[str] = ()) -> Auction:
        include = set(include)
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_AUCTION_COLUMNS} FROM auctions a WHERE a.id=$1", auction_id
                )
                if not row:
                    raise NotFoundError(f"auction {auction_id} not found")
                auction = _auction_from_row(row)
                if "owner" in include:
                    auction.owner = await self._fetch_user(conn, auction.owner_id)
                if "winner" in include and auction.winner_id:
                    auction.winner = await self._fetch_user(conn, auction.winner_id)
                if "bids" in include or "bidders" in include:
                    auction.bids = await self._fetch_bids(conn, auction_id, "bidders" in include)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(str(exc)) from exc
        return auction

    async def list_auctions(
        self, criteria: AuctionFilter, *, skip: int, take: int
    ) -> tuple[list[Auction], int]:
        clauses: list[str] = []
        args: list[Any] = []
        if criteria.status is not None:
            args.append(criteria.status.value)
            clauses.append(f"a.status=${len(args)}")
        if criteria.owner_id is not None:
            args.append(criteria.owner_id)
            clauses.append(f"a.owner_id=${len(args)}")
        if criteria.bidder_id is not None:
            args.append(criteria.bidder_id)
            clauses.append(
                f"EXISTS (SELECT 1 FROM bids b WHERE b.auction_id=a.id AND b.user_id=${len(args)})"
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                total = await conn.fetchval(f"SELECT COUNT(*) FROM auctions a {where}", *args)
                rows = await conn.fetch(
                    f"""SELECT {_AUCTION_COLUMNS}, u.name AS owner_name
                        FROM auctions a LEFT JOIN users u ON u.id = a.owner_id
                        {where}
                        ORDER BY a.created_at DESC, a.seq DESC
                        OFFSET ${len(args) + 1} LIMIT ${len(args) + 2}""",
                    *args,
                    skip,
                    take,
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(str(exc)) from exc
        items = []
        for row in rows:
            auction = _auction_from_row(row)
            if row["owner_name"] is not None:
                auction.owner = User(id=auction.owner_id, name=row["owner_name"])
            items.append(auction)
        return items, int(total)

    @asynccontextmanager
    async def session(self, auction_id: str) -> AsyncIterator[_PostgresSession]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"SELECT {_AUCTION_COLUMNS} FROM auctions a WHERE a.id=$1 FOR UPDATE",
                        auction_id,
                    )
                    if not row:
                        raise NotFoundError(f"auction {auction_id} not found")
                    auction = _auction_from_row(row)
                    auction.bids = await self._fetch_bids(conn, auction_id, False)
                    yield _PostgresSession(conn, auction)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(str(exc)) from exc

    async def get_user(self, user_id: str) -> User:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                user = await self._fetch_user(conn, user_id)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(str(exc)) from exc
        if user is None:
            raise NotFoundError(f"user {user_id} not found")
        return user

    async def ensure_user(self, user: User) -> User:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """INSERT INTO users(id, name) VALUES($1, $2)
                       ON CONFLICT (id) DO UPDATE SET name=EXCLUDED.name""",
                    user.id,
                    user.name,
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(str(exc)) from exc
        return user

    async def count_by_status(self) -> dict[AuctionStatus, int]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch("SELECT status, COUNT(*) AS n FROM auctions GROUP BY status")
        except asyncpg.PostgresError as exc:
            raise PersistenceError(str(exc)) from exc
        return {AuctionStatus(row["status"]): int(row["n"]) for row in rows}

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _fetch_user(self, conn: asyncpg.Connection, user_id: str) -> User | None:
        row = await conn.fetchrow("SELECT id, name FROM users WHERE id=$1", user_id)
        return User(id=row["id"], name=row["name"]) if row else None

    async def _fetch_bids(self, conn: asyncpg.Connection, auction_id: str, with_bidders: bool) -> list[Bid]:
        if with_bidders:
            rows = await conn.fetch(
                """SELECT b.id, b.auction_id, b.user_id, b.amount, b.placed_at, u.name
                   FROM bids b LEFT JOIN users u ON u.id = b.user_id
                   WHERE b.auction_id=$1 ORDER BY b.placed_at, b.seq""",
                auction_id,
            )
            return [
                _bid_from_row(row, User(id=row["user_id"], name=row["name"]) if row["name"] else None)
                for row in rows
            ]
        rows = await conn.fetch(
            """SELECT id, auction_id, user_id, amount, placed_at
               FROM bids WHERE auction_id=$1 ORDER BY placed_at, seq""",
            auction_id,
        )
        return [_bid_from_row(row) for row in rows]

"""WebSocket connections grouped by auction and indexed by user."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class _Connection:
    websocket: WebSocket
    user_id: str
    groups: set[str] = field(default_factory=set)


class ConnectionHub:
    """Tracks live subscribers. Send failures drop the offending connection."""

    def __init__(self) -> None:
        self._connections: dict[str, _Connection] = {}
        self._groups: dict[str, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: str) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        async with self._lock:
            self._connections[connection_id] = _Connection(websocket=websocket, user_id=user_id)
        logger.info("subscriber %s connected as user %s", connection_id, user_id)
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return
            for group in connection.groups:
                members = self._groups.get(group)
                if members is not None:
                    members.discard(connection_id)
                    if not members:
                        del self._groups[group]
        logger.info("subscriber %s disconnected", connection_id)

    async def join_group(self, connection_id: str, auction_id: str) -> None:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                raise KeyError(f"connection {connection_id} not registered")
            connection.groups.add(auction_id)
            self._groups[auction_id].add(connection_id)

    async def leave_group(self, connection_id: str, auction_id: str) -> None:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.groups.discard(auction_id)
            members = self._groups.get(auction_id)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._groups[auction_id]

    async def deliver_all(self, message: str) -> None:
        async with self._lock:
            targets = list(self._connections)
        await self._send(targets, message)

    async def deliver_group(self, auction_id: str, message: str) -> None:
        async with self._lock:
            targets = list(self._groups.get(auction_id, ()))
        await self._send(targets, message)

    async def deliver_user(self, user_id: str, message: str) -> None:
        async with self._lock:
            targets = [cid for cid, conn in self._connections.items() if conn.user_id == user_id]
        await self._send(targets, message)

    async def snapshot(self) -> dict[str, int]:
        async with self._lock:
            return {
                "connections": len(self._connections),
                "groups": len(self._groups),
                "users": len({conn.user_id for conn in self._connections.values()}),
            }

    async def _send(self, connection_ids: Iterable[str], message: str) -> None:
        pairs = [
            (cid, self._connections[cid].websocket)
            for cid in connection_ids
            if cid in self._connections
        ]
        if not pairs:
            return
        results = await asyncio.gather(
            *(websocket.send_text(message) for _, websocket in pairs),
            return_exceptions=True,
        )
        for (connection_id, _), result in zip(pairs, results):
            if isinstance(result, Exception):
                logger.warning("dropping subscriber %s after send failure: %s", connection_id, result)
                await self.disconnect(connection_id)

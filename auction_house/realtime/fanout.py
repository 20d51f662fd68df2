"""Event distribution to realtime subscribers, in-process or through Redis."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import orjson
from redis import asyncio as aioredis

from .codec import canonical_dumps, encode_frame
from .hub import ConnectionHub

logger = logging.getLogger(__name__)

SCOPE_ALL = "all"
SCOPE_GROUP = "group"
SCOPE_USER = "user"


class _PublisherProtocol:
    async def publish(self, scope: str, target: str | None, frame: str) -> None:  # pragma: no cover - protocol
        raise NotImplementedError

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None


class _LocalPublisher(_PublisherProtocol):
    def __init__(self, hub: ConnectionHub) -> None:
        self._hub = hub

    async def publish(self, scope: str, target: str | None, frame: str) -> None:
        if scope == SCOPE_ALL:
            await self._hub.deliver_all(frame)
        elif scope == SCOPE_GROUP and target is not None:
            await self._hub.deliver_group(target, frame)
        elif scope == SCOPE_USER and target is not None:
            await self._hub.deliver_user(target, frame)
        else:
            raise ValueError(f"unknown delivery scope {scope}")


class _RedisPublisher(_PublisherProtocol):
    """Publishes frames on a Redis channel; every worker relays them to its hub.

    A dropped subscription is logged and re-established after
    ``retry_delay_ms`` so realtime delivery resumes once Redis is back.
    """

    def __init__(self, hub: ConnectionHub, options: dict[str, Any]) -> None:
        url = options.get("url")
        if not url:
            raise ValueError("redis realtime backend requires url")
        self._channel = options.get("channel", "auction-house:events")
        self._retry_delay = int(options.get("retry_delay_ms", 1000)) / 1000
        self._redis = aioredis.from_url(url)
        self._local = _LocalPublisher(hub)
        self._relay_task: asyncio.Task | None = None

    async def publish(self, scope: str, target: str | None, frame: str) -> None:
        envelope = canonical_dumps({"scope": scope, "target": target, "frame": frame})
        await self._redis.publish(self._channel, envelope)

    async def start(self) -> None:
        if self._relay_task is None:
            pubsub = await self._subscribe()
            self._relay_task = asyncio.create_task(self._relay(pubsub))

    async def close(self) -> None:
        if self._relay_task is not None:
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning("redis relay ended with error: %r", exc)
            self._relay_task = None
        await self._redis.aclose()

    async def _subscribe(self) -> Any:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        return pubsub

    async def _relay(self, pubsub: Any | None) -> None:
        try:
            while True:
                try:
                    if pubsub is None:
                        pubsub = await self._subscribe()
                        logger.info("redis relay resubscribed to %s", self._channel)
                    async for message in pubsub.listen():
                        await self._forward(message)
                    logger.warning("redis relay subscription ended, resubscribing")
                except Exception as exc:
                    logger.warning(
                        "redis relay interrupted, resubscribing in %.1fs: %r", self._retry_delay, exc
                    )
                await self._discard(pubsub)
                pubsub = None
                await asyncio.sleep(self._retry_delay)
        finally:
            await self._discard(pubsub)

    async def _forward(self, message: dict[str, Any]) -> None:
        if message.get("type") != "message":
            return
        try:
            envelope = orjson.loads(message["data"])
            await self._local.publish(envelope["scope"], envelope.get("target"), envelope["frame"])
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("discarding malformed relay message: %s", exc)

    @staticmethod
    async def _discard(pubsub: Any | None) -> None:
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except Exception as exc:
            logger.debug("ignoring error while closing relay subscription: %r", exc)


class NotificationFanout:
    def __init__(
        self,
        hub: ConnectionHub,
        backend: str = "local",
        options: dict[str, Any] | None = None,
    ) -> None:
        options = options or {}
        if backend == "redis":
            self._publisher: _PublisherProtocol = _RedisPublisher(hub, options)
        elif backend == "local":
            self._publisher = _LocalPublisher(hub)
        else:
            raise ValueError(f"unknown realtime backend {backend}")
        self.backend = backend

    async def start(self) -> None:
        await self._publisher.start()

    async def close(self) -> None:
        await self._publisher.close()

    async def broadcast_all(self, event: str, payload: dict[str, Any]) -> None:
        await self._publisher.publish(SCOPE_ALL, None, encode_frame(event, payload))

    async def broadcast_to_group(self, auction_id: str, event: str, payload: dict[str, Any]) -> None:
        await self._publisher.publish(SCOPE_GROUP, auction_id, encode_frame(event, payload))

    async def notify_user(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        await self._publisher.publish(SCOPE_USER, user_id, encode_frame(event, payload))

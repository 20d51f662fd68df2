from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import (
    Body,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse

from .admin import health as admin_health
from .admin import stats as admin_stats
from .auction import views
from .auction.lifecycle import AuctionLifecycle
from .auction.models import User
from .auction.service import AuctionService
from .config import ServerConfig, get_server_config
from .errors import AuctionError, NotFoundError
from .identity import Identity, IdentityVerifier, TokenError
from .realtime.codec import decode_frame, encode_frame
from .realtime.fanout import NotificationFanout
from .realtime.hub import ConnectionHub
from .storage import AuctionStorage, build_storage
from .validation.validator import SchemaRegistry, get_schema_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    logging.basicConfig(level=server_config.logging.level, format=server_config.logging.format)
    storage = build_storage(server_config)
    hub = ConnectionHub()
    fanout = NotificationFanout(
        hub,
        backend=server_config.realtime.backend,
        options=dict(server_config.realtime.options),
    )
    await fanout.start()
    lifecycle = AuctionLifecycle(delete_requires_open=server_config.auction.delete_requires_open)
    auction_service = AuctionService(
        storage=storage,
        fanout=fanout,
        lifecycle=lifecycle,
        max_page_size=server_config.auction.max_page_size,
        send_timeout_ms=server_config.realtime.send_timeout_ms,
    )

    app.state.server_config = server_config
    app.state.schema_registry = get_schema_registry()
    app.state.identity = IdentityVerifier(server_config.identity.public_key_pem)
    app.state.storage = storage
    app.state.hub = hub
    app.state.fanout = fanout
    app.state.auction_service = auction_service
    app.state.start_time = datetime.now(timezone.utc)
    logger.info(
        "auction house started (storage=%s, realtime=%s)",
        server_config.storage.backend,
        server_config.realtime.backend,
    )

    try:
        yield
    finally:
        try:
            await fanout.close()
        finally:
            await storage.close()
        logger.info("auction house stopped")


app = FastAPI(
    title="Auction House",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_stats.router)


@app.exception_handler(AuctionError)
async def auction_error_handler(request: Request, exc: AuctionError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_auction_service(request: Request) -> AuctionService:
    return request.app.state.auction_service


def get_storage_backend(request: Request) -> AuctionStorage:
    return request.app.state.storage


async def get_current_identity(
    request: Request,
    authorization: str | None = Header(default=None),
    storage: AuctionStorage = Depends(get_storage_backend),
) -> Identity:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    verifier: IdentityVerifier = request.app.state.identity
    try:
        identity = verifier.verify(token.strip())
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    await storage.ensure_user(User(id=identity.user_id, name=identity.name))
    return identity


def _page_size(page_size: int | None, settings: ServerConfig) -> int:
    return settings.auction.default_page_size if page_size is None else page_size


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "auction-house",
        "version": app.version,
        "storage_backend": settings.storage.backend,
        "realtime_backend": settings.realtime.backend,
    }


@app.get("/api/auctions", tags=["auctions"])
async def list_open_auctions(
    page: int = Query(1),
    page_size: int | None = Query(None),
    service: AuctionService = Depends(get_auction_service),
    settings: ServerConfig = Depends(get_server_settings),
) -> dict[str, Any]:
    result = await service.list_open_auctions(page, _page_size(page_size, settings))
    return views.paged_result(result)


@app.post("/api/auctions", tags=["auctions"], status_code=status.HTTP_201_CREATED)
async def create_auction(
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_current_identity),
    schemas: SchemaRegistry = Depends(get_schema_service),
    service: AuctionService = Depends(get_auction_service),
) -> dict[str, Any]:
    schemas.validate("create_auction", payload)
    auction = await service.create_auction(
        identity.user_id,
        payload["title"],
        payload["description"],
        payload.get("image_url"),
    )
    return views.auction_detail(auction)


@app.get("/api/auctions/{auction_id}", tags=["auctions"])
async def get_auction(
    auction_id: str,
    service: AuctionService = Depends(get_auction_service),
) -> dict[str, Any]:
    return views.auction_detail(await service.get_auction(auction_id))


@app.delete(
    "/api/auctions/{auction_id}",
    tags=["auctions"],
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_auction(
    auction_id: str,
    identity: Identity = Depends(get_current_identity),
    service: AuctionService = Depends(get_auction_service),
) -> Response:
    await service.delete_auction(auction_id, identity.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/auctions/{auction_id}/bids", tags=["bids"])
async def get_bids(
    auction_id: str,
    service: AuctionService = Depends(get_auction_service),
) -> list[dict[str, Any]]:
    return [views.bid_detail(bid) for bid in await service.get_bids(auction_id)]


@app.post(
    "/api/auctions/{auction_id}/bids",
    tags=["bids"],
    status_code=status.HTTP_201_CREATED,
)
async def place_bid(
    auction_id: str,
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_current_identity),
    schemas: SchemaRegistry = Depends(get_schema_service),
    service: AuctionService = Depends(get_auction_service),
) -> dict[str, Any]:
    schemas.validate("place_bid", payload)
    bid = await service.place_bid(auction_id, identity.user_id, payload["amount"])
    return views.bid_detail(bid)


@app.put("/api/auctions/{auction_id}/close", tags=["auctions"])
async def close_auction(
    auction_id: str,
    identity: Identity = Depends(get_current_identity),
    service: AuctionService = Depends(get_auction_service),
) -> dict[str, Any]:
    auction = await service.close_auction(auction_id, identity.user_id)
    return views.status_update_payload(auction)


@app.put("/api/auctions/{auction_id}/sell", tags=["auctions"])
async def sell_auction(
    auction_id: str,
    payload: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_current_identity),
    schemas: SchemaRegistry = Depends(get_schema_service),
    service: AuctionService = Depends(get_auction_service),
) -> dict[str, Any]:
    schemas.validate("sell_auction", payload)
    auction = await service.sell_auction(auction_id, identity.user_id, payload["winning_bid_id"])
    return views.auction_summary(auction)


@app.get("/api/users/me", tags=["users"])
async def current_user(identity: Identity = Depends(get_current_identity)) -> dict[str, str]:
    return {"id": identity.user_id, "name": identity.name}


@app.get("/api/users/{user_id}/auctions/owned", tags=["users"])
async def list_owned_auctions(
    user_id: str,
    page: int = Query(1),
    page_size: int | None = Query(None),
    service: AuctionService = Depends(get_auction_service),
    settings: ServerConfig = Depends(get_server_settings),
) -> dict[str, Any]:
    result = await service.list_by_owner(user_id, page, _page_size(page_size, settings))
    return views.paged_result(result)


@app.get("/api/users/{user_id}/auctions/participated", tags=["users"])
async def list_participated_auctions(
    user_id: str,
    page: int = Query(1),
    page_size: int | None = Query(None),
    service: AuctionService = Depends(get_auction_service),
    settings: ServerConfig = Depends(get_server_settings),
) -> dict[str, Any]:
    result = await service.list_participated_in(user_id, page, _page_size(page_size, settings))
    return views.paged_result(result)


# Realtime -------------------------------------------------------------------


@app.websocket("/ws")
async def realtime(websocket: WebSocket, token: str = "") -> None:
    """
    Subscription channel for live auction events.

    Clients authenticate with ``?token=`` and then send
    ``{"action": "join" | "leave", "auction_id": "..."}`` frames. Server frames
    have the shape ``{"event": ..., "payload": {...}}``; join/leave requests are
    acknowledged with ``Joined``/``Left`` and rejected with ``Error``.
    """
    verifier: IdentityVerifier = websocket.app.state.identity
    try:
        identity = verifier.verify(token)
    except TokenError as exc:
        logger.info("rejecting realtime connection: %s", exc)
        await websocket.close(code=4401, reason="unauthorized")
        return

    hub: ConnectionHub = websocket.app.state.hub
    schemas: SchemaRegistry = websocket.app.state.schema_registry
    storage: AuctionStorage = websocket.app.state.storage
    connection_id = await hub.connect(websocket, identity.user_id)
    try:
        await websocket.send_text(
            encode_frame("Connected", {"connection_id": connection_id, "user_id": identity.user_id})
        )
        while True:
            raw = await websocket.receive_text()
            try:
                message = decode_frame(raw)
                schemas.validate("subscription", message)
                auction_id = message["auction_id"]
                if message["action"] == "join":
                    await storage.get_auction(auction_id)
                    await hub.join_group(connection_id, auction_id)
                    ack = "Joined"
                else:
                    await hub.leave_group(connection_id, auction_id)
                    ack = "Left"
            except (ValueError, NotFoundError) as exc:
                await websocket.send_text(encode_frame("Error", {"detail": str(exc)}))
                continue
            await websocket.send_text(encode_frame(ack, {"auction_id": auction_id}))
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection_id)

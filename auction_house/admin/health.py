"""Liveness plus a storage round-trip for load balancers and operators."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request, Response, status

from ..errors import PersistenceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health")
async def health(request: Request, response: Response) -> dict[str, Any]:
    state = request.app.state
    settings = state.server_config
    try:
        await state.storage.count_by_status()
        storage_status = "reachable"
    except PersistenceError as exc:
        logger.warning("health check: %s storage unreachable: %s", settings.storage.backend, exc)
        storage_status = "unreachable"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    subscribers = await state.hub.snapshot()
    return {
        "status": "healthy" if storage_status == "reachable" else "degraded",
        "uptime_seconds": int((datetime.now(timezone.utc) - state.start_time).total_seconds()),
        "version": request.app.version,
        "storage": {"backend": settings.storage.backend, "status": storage_status},
        "realtime": {
            "backend": settings.realtime.backend,
            "connections": subscribers["connections"],
        },
    }

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request

from helpdesk.core.config import get_settings
from helpdesk.core.responses import envelope

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/", summary="Service banner")
async def root() -> dict[str, Any]:
    settings = get_settings()
    return envelope(True, f"{settings.app_name} is running", data={"version": settings.app_version})


@router.get("/api/health", summary="Public health probe")
async def health(request: Request) -> dict[str, Any]:
    database = getattr(request.app.state, "database", None)
    database_status = "unavailable"
    if database is not None:
        try:
            await database.test_connection()
            database_status = "connected"
        except Exception:
            logger.warning("Database health probe failed", exc_info=True)
            database_status = "disconnected"
    return envelope(
        True,
        "OK",
        data={
            "status": "ok",
            "database": database_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )

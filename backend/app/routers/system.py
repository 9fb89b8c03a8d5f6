from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from fastapi import APIRouter, Request

router = APIRouter(tags=["system"])


@router.get("/health")
@router.get("/api/health")
async def health(request: Request):
    settings = request.app.state.settings
    repository = request.app.state.repository
    monitor = request.app.state.monitor

    store_ok = True
    try:
        await asyncio.to_thread(repository.list_recent_alerts, 1)
    except Exception:
        store_ok = False

    return {
        "ok": True,
        "status": "ok" if store_ok else "degraded",
        "app": settings.app_name,
        "environment": settings.environment,
        "monitor": monitor.state.value,
        "dependencies": {"store": repository.backend if store_ok else "degraded"},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

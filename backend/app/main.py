from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.routers import instruments, monitor, system
from app.services.instrument_repository import get_instrument_repository
from app.services.notification_hub import NotificationHub
from app.services.price_monitor import PriceMonitor
from app.ws_manager import INSTRUMENTS_CHANNEL, WSManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    repository = get_instrument_repository()
    hub = NotificationHub()
    ws_manager = WSManager()
    detach_ws = ws_manager.attach_hub(hub)
    price_monitor = PriceMonitor(
        repository,
        hub,
        skip_overlapping_cycles=settings.monitor_skip_overlapping_cycles,
    )

    app.state.settings = settings
    app.state.repository = repository
    app.state.hub = hub
    app.state.ws_manager = ws_manager
    app.state.monitor = price_monitor

    if settings.monitor_autostart:
        try:
            await price_monitor.start(settings.poll_interval_seconds)
        except Exception:
            logger.exception("Failed to start price monitor")

    try:
        yield
    finally:
        try:
            await price_monitor.stop()
            await price_monitor.wait_idle()
        except Exception:
            logger.exception("Failed to stop price monitor")
        for unsubscribe in detach_ws:
            unsubscribe()
        try:
            await asyncio.wait_for(ws_manager.flush(), timeout=ws_manager.send_timeout)
        except asyncio.TimeoutError:
            logger.warning("Dropping undelivered WebSocket events on shutdown")
        await ws_manager.close()
        await hub.close()


settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.frontend_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)

app.include_router(system.router)
app.include_router(instruments.router)
app.include_router(monitor.router)


@app.websocket("/ws/stream")
async def websocket_stream(websocket: WebSocket):
    allowed_channels = {"global", INSTRUMENTS_CHANNEL}
    channels_param = websocket.query_params.get("channels", f"global,{INSTRUMENTS_CHANNEL}")
    requested_channels = {channel.strip() for channel in channels_param.split(",") if channel.strip()}
    channels = {channel for channel in requested_channels if channel in allowed_channels} or {"global"}

    manager: WSManager = websocket.app.state.ws_manager
    await manager.connect(websocket, channels=channels)

    try:
        while True:
            raw = await websocket.receive_text()
            if raw.lower().strip() in {"ping", "heartbeat"}:
                await websocket.send_json({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})
    except WebSocketDisconnect:
        await manager.disconnect(websocket)
    except Exception:
        logger.exception("Unhandled websocket stream error")
        await manager.disconnect(websocket)


@app.get("/")
async def root():
    return {"app": settings.app_name, "status": "running"}

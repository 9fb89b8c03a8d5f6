from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from app.schemas import CycleSummary

router = APIRouter(prefix="/api/monitor", tags=["monitor"])


class MonitorStartRequest(BaseModel):
    interval_seconds: float | None = Field(default=None, gt=0)


def _status(request: Request) -> dict:
    monitor = request.app.state.monitor
    return {
        "state": monitor.state.value,
        "interval_seconds": monitor.interval_seconds,
        "cycles_in_flight": monitor.cycles_in_flight,
        "last_cycle": monitor.last_cycle.model_dump(mode="json") if monitor.last_cycle else None,
    }


@router.get("/status")
async def status(request: Request):
    return _status(request)


@router.post("/poll", response_model=CycleSummary)
async def poll_now(request: Request):
    monitor = request.app.state.monitor
    return await monitor.run_cycle()


@router.post("/start")
async def start(request: Request, payload: MonitorStartRequest | None = None):
    monitor = request.app.state.monitor
    settings = request.app.state.settings
    interval = (payload.interval_seconds if payload else None) or monitor.interval_seconds or settings.poll_interval_seconds
    await monitor.start(interval)
    return _status(request)


@router.post("/stop")
async def stop(request: Request):
    monitor = request.app.state.monitor
    await monitor.stop()
    return _status(request)

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

from fastapi import APIRouter, HTTPException, Query, Request, Response

from app.errors import DuplicateSymbolError, QuoteUnavailableError, StoreUnavailableError
from app.schemas import AlertRecord, Instrument, InstrumentCreateRequest, InstrumentUpdateRequest
from app.services.quotes import fetch_quote

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/instruments", tags=["instruments"])

T = TypeVar("T")


async def _store_call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except StoreUnavailableError as exc:
        logger.exception("Instrument store unavailable")
        raise HTTPException(status_code=503, detail="Instrument store unavailable") from exc


@router.get("", response_model=list[Instrument])
async def list_instruments(request: Request):
    repository = request.app.state.repository
    return await _store_call(repository.list_instruments)


@router.post("", response_model=Instrument, status_code=201)
async def create_instrument(payload: InstrumentCreateRequest, request: Request):
    repository = request.app.state.repository
    hub = request.app.state.hub

    if await _store_call(repository.find_by_symbol, payload.symbol) is not None:
        raise HTTPException(status_code=409, detail=f"{payload.symbol} is already tracked")

    try:
        quote = await asyncio.to_thread(fetch_quote, payload.symbol)
    except QuoteUnavailableError as exc:
        logger.warning("Rejecting %s: %s", payload.symbol, exc)
        raise HTTPException(status_code=502, detail=f"Market data provider unavailable: {exc}") from exc

    try:
        created = await _store_call(
            repository.create_instrument,
            symbol=payload.symbol,
            display_name=quote.display_name,
            alarm_price=payload.alarm_price,
            direction=payload.direction,
            initial_price=quote.price,
        )
    except DuplicateSymbolError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    logger.info("Tracking %s (alarm %s %.2f)", created.symbol, created.alarm_direction.value, created.alarm_price)
    await hub.instrument_updated(created)
    return created


@router.get("/alerts/recent", response_model=list[AlertRecord])
async def recent_alerts(request: Request, limit: int | None = Query(default=None, ge=1, le=200)):
    repository = request.app.state.repository
    settings = request.app.state.settings
    return await _store_call(repository.list_recent_alerts, limit or settings.alert_history_limit)


@router.get("/{instrument_id}", response_model=Instrument)
async def get_instrument(instrument_id: int, request: Request):
    repository = request.app.state.repository
    instrument = await _store_call(repository.get_instrument, instrument_id)
    if instrument is None:
        raise HTTPException(status_code=404, detail="Instrument not found")
    return instrument


@router.patch("/{instrument_id}", response_model=Instrument)
async def update_instrument(instrument_id: int, payload: InstrumentUpdateRequest, request: Request):
    repository = request.app.state.repository
    hub = request.app.state.hub

    updated = await _store_call(
        repository.update_alarm_config,
        instrument_id,
        alarm_price=payload.alarm_price,
        direction=payload.direction,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Instrument not found")

    await hub.instrument_updated(updated)
    return updated


@router.delete("/{instrument_id}", status_code=204)
async def delete_instrument(instrument_id: int, request: Request):
    repository = request.app.state.repository
    hub = request.app.state.hub

    if not await _store_call(repository.delete_instrument, instrument_id):
        raise HTTPException(status_code=404, detail="Instrument not found")

    logger.info("Stopped tracking instrument %s", instrument_id)
    await hub.instrument_list_replaced(await _store_call(repository.list_instruments))
    return Response(status_code=204)

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from supabase import Client

from app.config import get_settings
from app.errors import DuplicateSymbolError, StoreUnavailableError
from app.schemas import AlarmDirection, AlertRecord, Instrument
from app.services.database import get_supabase

logger = logging.getLogger(__name__)

_INSTRUMENTS_TABLE = "instruments"
_ALERTS_TABLE = "instrument_alerts"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryInstrumentRepository:
    """Process-local store. Every operation holds one lock, so single-row writes are atomic."""

    backend = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._instruments: dict[int, Instrument] = {}
        self._alerts: list[AlertRecord] = []
        self._instrument_ids = itertools.count(1)
        self._alert_ids = itertools.count(1)

    def list_instruments(self) -> list[Instrument]:
        with self._lock:
            rows = sorted(self._instruments.values(), key=lambda item: item.symbol)
            return [row.model_copy() for row in rows]

    def get_instrument(self, instrument_id: int) -> Instrument | None:
        with self._lock:
            row = self._instruments.get(instrument_id)
            return row.model_copy() if row else None

    def find_by_symbol(self, symbol: str) -> Instrument | None:
        token = symbol.strip().upper()
        with self._lock:
            for row in self._instruments.values():
                if row.symbol == token:
                    return row.model_copy()
        return None

    def create_instrument(
        self,
        symbol: str,
        display_name: str,
        alarm_price: float,
        direction: AlarmDirection,
        initial_price: float | None,
    ) -> Instrument:
        token = symbol.strip().upper()
        with self._lock:
            if any(row.symbol == token for row in self._instruments.values()):
                raise DuplicateSymbolError(token)
            now = _now()
            row = Instrument(
                id=next(self._instrument_ids),
                symbol=token,
                display_name=display_name,
                alarm_price=alarm_price,
                alarm_direction=AlarmDirection(direction),
                last_price=initial_price,
                created_at=now,
                updated_at=now,
            )
            self._instruments[row.id] = row
            return row.model_copy()

    def update_alarm_config(
        self,
        instrument_id: int,
        alarm_price: float | None = None,
        direction: AlarmDirection | None = None,
    ) -> Instrument | None:
        with self._lock:
            row = self._instruments.get(instrument_id)
            if row is None:
                return None
            updates: dict[str, Any] = {}
            if alarm_price is not None:
                updates["alarm_price"] = alarm_price
            if direction is not None:
                updates["alarm_direction"] = AlarmDirection(direction)
            if updates:
                row = row.model_copy(update={**updates, "updated_at": _now()})
                self._instruments[instrument_id] = row
            return row.model_copy()

    def update_last_price(self, instrument_id: int, price: float) -> None:
        with self._lock:
            row = self._instruments.get(instrument_id)
            if row is None:
                return
            self._instruments[instrument_id] = row.model_copy(update={"last_price": price, "updated_at": _now()})

    def mark_alerted(self, instrument_id: int) -> None:
        with self._lock:
            row = self._instruments.get(instrument_id)
            if row is None:
                return
            self._instruments[instrument_id] = row.model_copy(update={"last_alert_at": _now()})

    def delete_instrument(self, instrument_id: int) -> bool:
        with self._lock:
            if self._instruments.pop(instrument_id, None) is None:
                return False
            self._alerts = [alert for alert in self._alerts if alert.instrument_id != instrument_id]
            return True

    def append_alert(self, instrument_id: int, message: str, trigger_price: float) -> AlertRecord:
        with self._lock:
            if instrument_id not in self._instruments:
                raise StoreUnavailableError(f"record alert for instrument {instrument_id}: instrument no longer exists")
            record = AlertRecord(
                id=next(self._alert_ids),
                instrument_id=instrument_id,
                message=message,
                trigger_price=trigger_price,
                triggered_at=_now(),
            )
            self._alerts.append(record)
            return record

    def list_recent_alerts(self, limit: int = 50) -> list[AlertRecord]:
        with self._lock:
            ordered = sorted(self._alerts, key=lambda item: (item.triggered_at, item.id), reverse=True)
        return ordered[: max(1, limit)]


class SupabaseInstrumentRepository:
    """Store backed by the ``instruments`` and ``instrument_alerts`` Supabase tables.

    ``instrument_alerts.instrument_id`` references ``instruments.id`` with
    ``on delete cascade``; alert rows are also removed explicitly on delete.
    """

    backend = "supabase"

    def __init__(self, client: Client) -> None:
        self._client = client

    def _execute(self, action: str, query: Any) -> list[dict[str, Any]]:
        try:
            data = query.execute().data
        except Exception as exc:
            raise StoreUnavailableError(f"{action} failed: {exc}") from exc
        return data if isinstance(data, list) else []

    def _instruments(self) -> Any:
        return self._client.table(_INSTRUMENTS_TABLE)

    def _alerts(self) -> Any:
        return self._client.table(_ALERTS_TABLE)

    def list_instruments(self) -> list[Instrument]:
        rows = self._execute("list instruments", self._instruments().select("*").order("symbol"))
        return [Instrument.model_validate(row) for row in rows]

    def get_instrument(self, instrument_id: int) -> Instrument | None:
        rows = self._execute(
            f"read instrument {instrument_id}",
            self._instruments().select("*").eq("id", instrument_id).limit(1),
        )
        return Instrument.model_validate(rows[0]) if rows else None

    def find_by_symbol(self, symbol: str) -> Instrument | None:
        token = symbol.strip().upper()
        rows = self._execute(
            f"read instrument {token}",
            self._instruments().select("*").eq("symbol", token).limit(1),
        )
        return Instrument.model_validate(rows[0]) if rows else None

    def create_instrument(
        self,
        symbol: str,
        display_name: str,
        alarm_price: float,
        direction: AlarmDirection,
        initial_price: float | None,
    ) -> Instrument:
        token = symbol.strip().upper()
        now = _now().isoformat()
        payload = {
            "symbol": token,
            "display_name": display_name,
            "alarm_price": alarm_price,
            "alarm_direction": AlarmDirection(direction).value,
            "last_price": initial_price,
            "created_at": now,
            "updated_at": now,
        }
        try:
            rows = self._execute(f"create instrument {token}", self._instruments().insert(payload))
        except StoreUnavailableError as exc:
            if "23505" in str(exc) or "duplicate key" in str(exc).lower():
                raise DuplicateSymbolError(token) from exc
            raise
        if not rows:
            raise StoreUnavailableError(f"create instrument {token} returned no row")
        return Instrument.model_validate(rows[0])

    def update_alarm_config(
        self,
        instrument_id: int,
        alarm_price: float | None = None,
        direction: AlarmDirection | None = None,
    ) -> Instrument | None:
        updates: dict[str, Any] = {}
        if alarm_price is not None:
            updates["alarm_price"] = alarm_price
        if direction is not None:
            updates["alarm_direction"] = AlarmDirection(direction).value
        if not updates:
            return self.get_instrument(instrument_id)
        updates["updated_at"] = _now().isoformat()
        rows = self._execute(
            f"update instrument {instrument_id}",
            self._instruments().update(updates).eq("id", instrument_id),
        )
        return Instrument.model_validate(rows[0]) if rows else None

    def update_last_price(self, instrument_id: int, price: float) -> None:
        self._execute(
            f"update price of instrument {instrument_id}",
            self._instruments().update({"last_price": price, "updated_at": _now().isoformat()}).eq("id", instrument_id),
        )

    def mark_alerted(self, instrument_id: int) -> None:
        self._execute(
            f"stamp alert on instrument {instrument_id}",
            self._instruments().update({"last_alert_at": _now().isoformat()}).eq("id", instrument_id),
        )

    def delete_instrument(self, instrument_id: int) -> bool:
        self._execute(
            f"delete alerts of instrument {instrument_id}",
            self._alerts().delete().eq("instrument_id", instrument_id),
        )
        rows = self._execute(
            f"delete instrument {instrument_id}",
            self._instruments().delete().eq("id", instrument_id),
        )
        return bool(rows)

    def append_alert(self, instrument_id: int, message: str, trigger_price: float) -> AlertRecord:
        payload = {
            "instrument_id": instrument_id,
            "message": message,
            "trigger_price": trigger_price,
            "triggered_at": _now().isoformat(),
        }
        rows = self._execute(f"record alert for instrument {instrument_id}", self._alerts().insert(payload))
        if not rows:
            raise StoreUnavailableError(f"record alert for instrument {instrument_id} returned no row")
        return AlertRecord.model_validate(rows[0])

    def list_recent_alerts(self, limit: int = 50) -> list[AlertRecord]:
        rows = self._execute(
            "list recent alerts",
            self._alerts().select("*").order("triggered_at", desc=True).limit(max(1, limit)),
        )
        return [AlertRecord.model_validate(row) for row in rows]


InstrumentRepository = InMemoryInstrumentRepository | SupabaseInstrumentRepository


@lru_cache(maxsize=1)
def get_instrument_repository() -> InstrumentRepository:
    settings = get_settings()
    if settings.instrument_store == "supabase":
        client = get_supabase()
        if client is None:
            raise StoreUnavailableError("Supabase store selected but SUPABASE_URL/SUPABASE_SERVICE_KEY are not set")
        logger.info("Using Supabase instrument store at %s", settings.supabase_url)
        return SupabaseInstrumentRepository(client)
    logger.info("Using in-memory instrument store")
    return InMemoryInstrumentRepository()

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_SYMBOL_PATTERN = r"^[A-Za-z0-9.\-^=]{1,12}$"


class AlarmDirection(str, Enum):
    ABOVE = "above"
    BELOW = "below"


class Quote(BaseModel):
    symbol: str
    display_name: str
    price: float


class Instrument(BaseModel):
    id: int
    symbol: str
    display_name: str
    alarm_price: float = Field(gt=0)
    alarm_direction: AlarmDirection
    last_price: Optional[float] = None
    last_alert_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class InstrumentRef(BaseModel):
    symbol: str
    display_name: str


class AlertRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    instrument_id: int
    message: str
    trigger_price: float
    triggered_at: datetime


class AlertEvent(AlertRecord):
    instrument: InstrumentRef


class InstrumentCreateRequest(BaseModel):
    symbol: str = Field(min_length=1, max_length=12, pattern=_SYMBOL_PATTERN)
    alarm_price: float = Field(gt=0)
    direction: AlarmDirection = AlarmDirection.ABOVE

    @field_validator("symbol", mode="before")
    @classmethod
    def _normalize_symbol(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class InstrumentUpdateRequest(BaseModel):
    alarm_price: Optional[float] = Field(default=None, gt=0)
    direction: Optional[AlarmDirection] = None

    @model_validator(mode="after")
    def _require_one_field(self) -> "InstrumentUpdateRequest":
        if self.alarm_price is None and self.direction is None:
            raise ValueError("at least one of alarm_price or direction is required")
        return self


class CycleSummary(BaseModel):
    started_at: datetime
    finished_at: datetime
    instruments: int = 0
    refreshed: int = 0
    failed: int = 0
    alerts: List[AlertEvent] = Field(default_factory=list)
    error: Optional[str] = None

from __future__ import annotations


class MonitorError(Exception):
    """Base class for errors raised by the price alarm monitor."""


class QuoteUnavailableError(MonitorError):
    def __init__(self, symbol: str, reason: str | None = None) -> None:
        self.symbol = symbol
        self.reason = reason
        message = f"no price available for {symbol}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class StoreUnavailableError(MonitorError):
    """The instrument store could not complete a read or write."""


class DuplicateSymbolError(MonitorError):
    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"instrument {symbol} is already tracked")

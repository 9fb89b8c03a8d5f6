from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import httpx

from app.config import Settings, get_settings
from app.errors import QuoteUnavailableError
from app.schemas import Quote

logger = logging.getLogger(__name__)

_YAHOO_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_7_0) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/121.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json,text/plain,*/*",
    "Accept-Language": "en-US,en;q=0.9",
}


def _safe_float(value: Any) -> float | None:
    try:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, str):
            clean = value.strip().replace(",", "").replace("$", "")
            if not clean:
                return None
            value = clean
        return float(value)
    except (TypeError, ValueError):
        return None


def _valid_price(value: Any) -> float | None:
    price = _safe_float(value)
    if price is None or price != price or price <= 0:
        return None
    return price


@contextmanager
def _http_client(client: httpx.Client | None, timeout: float) -> Iterator[httpx.Client]:
    if client is not None:
        yield client
        return
    with httpx.Client(timeout=timeout) as owned:
        yield owned


def _finnhub_get(client: httpx.Client, settings: Settings, path: str, params: dict[str, Any]) -> dict[str, Any]:
    try:
        resp = client.get(
            f"{settings.finnhub_api_url.rstrip('/')}/{path.lstrip('/')}",
            params={**params, "token": settings.finnhub_api_key},
        )
        resp.raise_for_status()
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug("Finnhub %s request failed: %s", path, exc)
        return {}
    return payload if isinstance(payload, dict) else {}


def _finnhub_quote(client: httpx.Client, settings: Settings, symbol: str) -> Quote | None:
    quote = _finnhub_get(client, settings, "/quote", {"symbol": symbol})
    price = _valid_price(quote.get("c"))
    if price is None:
        return None
    profile = _finnhub_get(client, settings, "/stock/profile2", {"symbol": symbol})
    name = str(profile.get("name") or "").strip() or symbol
    return Quote(symbol=symbol, display_name=name, price=price)


def _yahoo_quote(client: httpx.Client, settings: Settings, symbol: str) -> Quote | None:
    try:
        resp = client.get(settings.yahoo_quote_url, params={"symbols": symbol}, headers=_YAHOO_HEADERS)
        if resp.status_code in {401, 403, 404, 429}:
            logger.debug("Yahoo quote for %s rejected with HTTP %s", symbol, resp.status_code)
            return None
        resp.raise_for_status()
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug("Yahoo quote request for %s failed: %s", symbol, exc)
        return None

    rows = payload.get("quoteResponse", {}).get("result", []) if isinstance(payload, dict) else []
    if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
        return None
    row = rows[0]
    price = _valid_price(row.get("regularMarketPrice"))
    if price is None:
        return None
    resolved = str(row.get("symbol") or symbol).strip().upper() or symbol
    name = row.get("shortName") or row.get("longName") or resolved
    return Quote(symbol=resolved, display_name=str(name).strip() or resolved, price=price)


def fetch_quote(
    symbol: str,
    *,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
) -> Quote:
    """Look up the latest price and display name for ``symbol``.

    Finnhub is tried first when an API key is configured, then Yahoo. Raises
    ``QuoteUnavailableError`` when neither yields a positive numeric price;
    a missing price is never reported as zero.
    """
    token = str(symbol or "").strip().upper()
    if not token:
        raise QuoteUnavailableError(str(symbol), "empty symbol")

    settings = settings or get_settings()
    with _http_client(client, settings.quote_timeout_seconds) as http:
        if settings.finnhub_api_key:
            quote = _finnhub_quote(http, settings, token)
            if quote is not None:
                return quote
        quote = _yahoo_quote(http, settings, token)
        if quote is not None:
            return quote

    raise QuoteUnavailableError(token)

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List
from urllib.parse import urlparse

_STORE_BACKENDS = {"memory", "supabase"}


def _load_dotenv(path: str = ".env") -> None:
    candidates = [Path(path)]
    resolved = Path(__file__).resolve()
    for parent in resolved.parents:
        candidates.append(parent / ".env")
    seen: set[Path] = set()
    for env_path in candidates:
        if env_path in seen or not env_path.exists():
            continue
        seen.add(env_path)
        for raw in env_path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            os.environ.setdefault(key, value)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
    except json.JSONDecodeError:
        pass
    return [token.strip() for token in raw.split(",") if token.strip()] or default


@dataclass
class Settings:
    app_name: str = "Price Alarm Monitor"
    environment: str = "development"
    log_level: str = "INFO"

    frontend_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"])

    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_key: str = ""
    instrument_store: str = "memory"

    finnhub_api_key: str = ""
    finnhub_api_url: str = "https://finnhub.io/api/v1"
    yahoo_quote_url: str = "https://query1.finance.yahoo.com/v7/finance/quote"
    quote_timeout_seconds: float = 12.0

    poll_interval_seconds: float = 60.0
    monitor_autostart: bool = True
    monitor_skip_overlapping_cycles: bool = False
    alert_history_limit: int = 50


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _validate_settings(settings: Settings) -> None:
    if settings.instrument_store not in _STORE_BACKENDS:
        raise RuntimeError(
            f"Unknown INSTRUMENT_STORE {settings.instrument_store!r}; expected one of {', '.join(sorted(_STORE_BACKENDS))}"
        )

    if settings.environment.lower() == "production" or settings.instrument_store == "supabase":
        required = {
            "SUPABASE_URL": settings.supabase_url,
            "SUPABASE_SERVICE_KEY": settings.supabase_service_key or settings.supabase_key,
        }
        missing = [key for key, value in required.items() if not str(value or "").strip()]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(sorted(missing))}")

    if settings.poll_interval_seconds <= 0:
        raise RuntimeError("POLL_INTERVAL_SECONDS must be greater than zero")
    if settings.alert_history_limit <= 0:
        raise RuntimeError("ALERT_HISTORY_LIMIT must be greater than zero")

    invalid_origins = [origin for origin in settings.frontend_origins if not _is_http_url(origin)]
    if invalid_origins:
        raise RuntimeError(f"Invalid FRONTEND_ORIGINS entries: {', '.join(invalid_origins)}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    _load_dotenv()
    settings = Settings(
        app_name=_env("APP_NAME", "Price Alarm Monitor"),
        environment=_env("ENVIRONMENT", "development"),
        log_level=_env("LOG_LEVEL", "INFO"),
        frontend_origins=_env_list("FRONTEND_ORIGINS", ["http://localhost:5173", "http://localhost:3000"]),
        supabase_url=_env("SUPABASE_URL"),
        supabase_key=_env("SUPABASE_KEY"),
        supabase_service_key=_env("SUPABASE_SERVICE_KEY"),
        instrument_store=_env("INSTRUMENT_STORE", "memory").strip().lower(),
        finnhub_api_key=_env("FINNHUB_API_KEY"),
        finnhub_api_url=_env("FINNHUB_API_URL", "https://finnhub.io/api/v1"),
        yahoo_quote_url=_env("YAHOO_QUOTE_URL", "https://query1.finance.yahoo.com/v7/finance/quote"),
        quote_timeout_seconds=_env_float("QUOTE_TIMEOUT_SECONDS", 12.0),
        poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 60.0),
        monitor_autostart=_env_bool("MONITOR_AUTOSTART", True),
        monitor_skip_overlapping_cycles=_env_bool("MONITOR_SKIP_OVERLAPPING_CYCLES", False),
        alert_history_limit=_env_int("ALERT_HISTORY_LIMIT", 50),
    )
    _validate_settings(settings)
    return settings

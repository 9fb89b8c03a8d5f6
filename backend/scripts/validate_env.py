from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.config import get_settings


def main() -> int:
    try:
        settings = get_settings()
    except RuntimeError as exc:
        print(f"Invalid configuration: {exc}")
        return 1

    required: dict[str, str] = {}
    if settings.instrument_store == "supabase":
        required["SUPABASE_URL"] = settings.supabase_url
        required["SUPABASE_SERVICE_KEY"] = settings.supabase_service_key or settings.supabase_key
    optional = {
        "FINNHUB_API_KEY": settings.finnhub_api_key,
    }

    missing_required = [name for name, value in required.items() if not str(value or "").strip()]

    print("Environment check")
    print("=================")
    print(f"store backend: {settings.instrument_store}")
    print(f"poll interval: {settings.poll_interval_seconds:g}s (autostart {'on' if settings.monitor_autostart else 'off'})")
    for name, value in required.items():
        print(f"[{'ok' if value else 'missing'}] {name} (required)")
    for name, value in optional.items():
        print(f"[{'ok' if value else 'missing'}] {name} (optional, Yahoo quotes are used without it)")

    if missing_required:
        print("\nMissing required environment variables:")
        for item in missing_required:
            print(f"- {item}")
        return 1

    print("\nAll required environment variables are present.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

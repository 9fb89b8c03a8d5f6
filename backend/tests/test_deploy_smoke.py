from __future__ import annotations

from fastapi.testclient import TestClient

from app.main import app
from app.schemas import Quote


def _fake_quote(symbol: str) -> Quote:
    return Quote(symbol=symbol, display_name=f"{symbol} Corp", price=42.0)


def test_health_endpoint_reports_running_app():
    with TestClient(app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["dependencies"]["store"] == "memory"
    assert payload["monitor"] == "stopped"


def test_instrument_changes_are_pushed_over_websocket(monkeypatch):
    monkeypatch.setattr("app.routers.instruments.fetch_quote", _fake_quote)

    with TestClient(app) as client:
        with client.websocket_connect("/ws/stream?channels=instruments") as websocket:
            created = client.post("/api/instruments", json={"symbol": "ibm", "alarm_price": 50})
            assert created.status_code == 201
            update = websocket.receive_json()

            deleted = client.delete(f"/api/instruments/{created.json()['id']}")
            assert deleted.status_code == 204
            replaced = websocket.receive_json()

            websocket.send_text("ping")
            pong = websocket.receive_json()

    assert update["channel"] == "instruments"
    assert update["type"] == "instrument:update"
    assert update["data"]["symbol"] == "IBM"
    assert update["data"]["last_price"] == 42.0
    assert replaced["type"] == "instrument:list"
    assert replaced["data"] == []
    assert pong["type"] == "pong"


def test_monitor_can_be_started_and_stopped_over_http():
    with TestClient(app) as client:
        client.app.state.monitor.quote_fetcher = _fake_quote
        started = client.post("/api/monitor/start", json={"interval_seconds": 3600})
        assert started.status_code == 200
        assert started.json()["state"] == "running"
        assert started.json()["interval_seconds"] == 3600

        stopped = client.post("/api/monitor/stop")
        assert stopped.json()["state"] == "stopped"

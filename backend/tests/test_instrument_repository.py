from __future__ import annotations

import pytest

from app.errors import DuplicateSymbolError, StoreUnavailableError
from app.schemas import AlarmDirection
from app.services import instrument_repository
from app.services.instrument_repository import InMemoryInstrumentRepository, SupabaseInstrumentRepository


def test_in_memory_lists_by_symbol_and_normalizes_case():
    repo = InMemoryInstrumentRepository()
    repo.create_instrument("msft", "Microsoft", 400.0, AlarmDirection.ABOVE, 390.0)
    repo.create_instrument(" aapl ", "Apple", 200.0, AlarmDirection.BELOW, 210.0)

    assert [item.symbol for item in repo.list_instruments()] == ["AAPL", "MSFT"]
    assert repo.find_by_symbol("Aapl").display_name == "Apple"

    with pytest.raises(DuplicateSymbolError):
        repo.create_instrument("MSFT", "Microsoft", 1.0, AlarmDirection.ABOVE, None)


def test_in_memory_snapshot_is_point_in_time():
    repo = InMemoryInstrumentRepository()
    created = repo.create_instrument("AAPL", "Apple", 200.0, AlarmDirection.ABOVE, 190.0)
    snapshot = repo.list_instruments()

    repo.update_last_price(created.id, 201.0)
    repo.create_instrument("MSFT", "Microsoft", 400.0, AlarmDirection.ABOVE, None)

    assert [item.last_price for item in snapshot] == [190.0]
    assert repo.get_instrument(created.id).last_price == 201.0


def test_in_memory_alarm_config_updates():
    repo = InMemoryInstrumentRepository()
    created = repo.create_instrument("AAPL", "Apple", 200.0, AlarmDirection.ABOVE, 190.0)

    updated = repo.update_alarm_config(created.id, alarm_price=180.0)
    assert updated.alarm_price == 180.0
    assert updated.alarm_direction is AlarmDirection.ABOVE

    updated = repo.update_alarm_config(created.id, direction=AlarmDirection.BELOW)
    assert updated.alarm_direction is AlarmDirection.BELOW
    assert updated.updated_at >= created.updated_at

    unchanged = repo.update_alarm_config(created.id)
    assert unchanged.alarm_price == 180.0
    assert repo.update_alarm_config(999, alarm_price=1.0) is None


def test_in_memory_alert_history_and_cascade():
    repo = InMemoryInstrumentRepository()
    aapl = repo.create_instrument("AAPL", "Apple", 200.0, AlarmDirection.ABOVE, 190.0)
    msft = repo.create_instrument("MSFT", "Microsoft", 400.0, AlarmDirection.ABOVE, 390.0)

    repo.append_alert(aapl.id, "first", 201.0)
    repo.append_alert(msft.id, "second", 401.0)
    repo.append_alert(aapl.id, "third", 202.0)
    repo.mark_alerted(aapl.id)

    assert [item.message for item in repo.list_recent_alerts()] == ["third", "second", "first"]
    assert [item.message for item in repo.list_recent_alerts(limit=1)] == ["third"]
    assert repo.get_instrument(aapl.id).last_alert_at is not None

    assert repo.delete_instrument(aapl.id) is True
    assert repo.delete_instrument(aapl.id) is False
    assert [item.message for item in repo.list_recent_alerts()] == ["second"]
    assert repo.get_instrument(aapl.id) is None


def test_writes_to_missing_rows_are_ignored():
    repo = InMemoryInstrumentRepository()
    repo.update_last_price(42, 10.0)
    repo.mark_alerted(42)
    assert repo.list_instruments() == []


def test_alert_for_deleted_instrument_is_rejected():
    repo = InMemoryInstrumentRepository()
    gone = repo.create_instrument("GONE", "Gone", 10.0, AlarmDirection.ABOVE, 9.0)
    repo.delete_instrument(gone.id)

    with pytest.raises(StoreUnavailableError):
        repo.append_alert(gone.id, "GONE moved above the alarm price 10.00 (last 11.00)", 11.0)
    assert repo.list_recent_alerts() == []


def test_recent_alert_limit_is_at_least_one():
    repo = InMemoryInstrumentRepository()
    item = repo.create_instrument("AAPL", "Apple", 200.0, AlarmDirection.ABOVE, 190.0)
    repo.append_alert(item.id, "first", 201.0)
    repo.append_alert(item.id, "second", 202.0)

    assert [alert.message for alert in repo.list_recent_alerts(0)] == ["second"]
    assert [alert.message for alert in repo.list_recent_alerts(-5)] == ["second"]


class _FakeResult:
    def __init__(self, data):
        self.data = data


class _FakeQuery:
    def __init__(self, table: "_FakeTable", op: str, payload=None) -> None:
        self.table = table
        self.op = op
        self.payload = payload
        self.filters: list[tuple[str, object]] = []
        self.ordering: tuple[str, bool] | None = None
        self.limit_to: int | None = None

    def select(self, *_args, **_kwargs):
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.ordering = (column, desc)
        return self

    def limit(self, count):
        self.limit_to = count
        return self

    def _matches(self, row) -> bool:
        return all(row.get(column) == value for column, value in self.filters)

    def execute(self):
        if self.table.error is not None:
            raise self.table.error
        rows = self.table.rows
        if self.op == "insert":
            row = {"id": len(rows) + 1, "last_alert_at": None, **self.payload}
            rows.append(row)
            return _FakeResult([dict(row)])
        if self.op == "update":
            touched = []
            for row in rows:
                if self._matches(row):
                    row.update(self.payload)
                    touched.append(dict(row))
            return _FakeResult(touched)
        if self.op == "delete":
            removed = [row for row in rows if self._matches(row)]
            self.table.rows = [row for row in rows if not self._matches(row)]
            return _FakeResult(removed)
        selected = [dict(row) for row in rows if self._matches(row)]
        if self.ordering:
            column, desc = self.ordering
            selected.sort(key=lambda row: row[column], reverse=desc)
        if self.limit_to is not None:
            selected = selected[: self.limit_to]
        return _FakeResult(selected)


class _FakeTable:
    def __init__(self) -> None:
        self.rows: list[dict] = []
        self.error: Exception | None = None

    def select(self, *_args, **_kwargs):
        return _FakeQuery(self, "select")

    def insert(self, payload):
        return _FakeQuery(self, "insert", payload)

    def update(self, payload):
        return _FakeQuery(self, "update", payload)

    def delete(self):
        return _FakeQuery(self, "delete")


class _FakeClient:
    def __init__(self) -> None:
        self.tables: dict[str, _FakeTable] = {}

    def table(self, name: str) -> _FakeTable:
        return self.tables.setdefault(name, _FakeTable())


def test_supabase_repository_round_trip():
    client = _FakeClient()
    repo = SupabaseInstrumentRepository(client)

    created = repo.create_instrument("nvda", "NVIDIA", 900.0, AlarmDirection.BELOW, 950.0)
    repo.create_instrument("AMD", "AMD", 150.0, AlarmDirection.ABOVE, 140.0)
    assert created.symbol == "NVDA"
    assert created.alarm_direction is AlarmDirection.BELOW
    assert [item.symbol for item in repo.list_instruments()] == ["AMD", "NVDA"]

    repo.update_last_price(created.id, 899.0)
    repo.mark_alerted(created.id)
    current = repo.find_by_symbol("nvda")
    assert current.last_price == 899.0
    assert current.last_alert_at is not None

    record = repo.append_alert(created.id, "NVDA moved below the alarm price 900.00 (last 899.00)", 899.0)
    assert record.instrument_id == created.id
    assert repo.list_recent_alerts(5)[0].trigger_price == 899.0

    assert repo.update_alarm_config(created.id, alarm_price=880.0).alarm_price == 880.0
    assert repo.delete_instrument(created.id) is True
    assert repo.get_instrument(created.id) is None
    assert repo.list_recent_alerts() == []


def test_supabase_errors_become_store_unavailable():
    client = _FakeClient()
    repo = SupabaseInstrumentRepository(client)
    client.table("instruments").error = RuntimeError("connection refused")

    with pytest.raises(StoreUnavailableError, match="connection refused"):
        repo.list_instruments()


def test_supabase_unique_violation_maps_to_duplicate_symbol():
    client = _FakeClient()
    repo = SupabaseInstrumentRepository(client)
    client.table("instruments").error = RuntimeError('duplicate key value violates unique constraint "instruments_symbol_key"')

    with pytest.raises(DuplicateSymbolError):
        repo.create_instrument("AAPL", "Apple", 1.0, AlarmDirection.ABOVE, None)


def test_repository_factory_defaults_to_memory(monkeypatch):
    monkeypatch.setenv("INSTRUMENT_STORE", "memory")
    repo = instrument_repository.get_instrument_repository()
    assert repo.backend == "memory"
    assert instrument_repository.get_instrument_repository() is repo


def test_repository_factory_uses_supabase_when_selected(monkeypatch):
    client = _FakeClient()
    monkeypatch.setenv("INSTRUMENT_STORE", "supabase")
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service-key")
    monkeypatch.setattr(instrument_repository, "get_supabase", lambda: client)

    repo = instrument_repository.get_instrument_repository()

    assert repo.backend == "supabase"

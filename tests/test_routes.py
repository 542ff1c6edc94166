import pytest

from conftest import T0, FakeClock, kline_rows
from kline_sync import container
from kline_sync.api import routes
from kline_sync.errors import NotFoundError, ValidationError
from kline_sync.schemas import ConfigUpdateRequest, HistorySyncRequest, KlineDeleteRequest, SeriesRequest

HOUR = 3_600_000


@pytest.fixture
def api(services, monkeypatch):
    monkeypatch.setattr(container, "_services", services)
    return services


def test_health_payload(api):
    payload = routes.health()
    assert payload["status"] == "ok"
    assert payload["schema_version"] == "1.0"
    assert payload["realtime_subscriptions"] == 0


def test_metrics_shape(api):
    payload = routes.all_metrics()
    assert payload["schema_version"] == "1.0"
    assert payload["gaps"]["PENDING"] == 0
    assert "circuit_breakers" in payload
    assert payload["pending_backfills"] == 0


def test_list_and_delete_klines(api, symbol):
    api.store.batch_upsert(kline_rows(symbol.id, "1h", [T0, T0 + HOUR, T0 + 2 * HOUR]))

    listed = routes.list_klines(symbol.id, "1h", start=str(T0 + HOUR), end=None, limit=500)
    assert listed.count == 2
    assert listed.klines[0].open_time_ms == T0 + HOUR

    deleted = routes.delete_klines(
        KlineDeleteRequest(symbol_id=symbol.id, interval="1h", start_time=T0, end_time=T0)
    )
    assert deleted["deleted_count"] == 1


def test_delete_series_and_symbol_routes(api, symbol):
    api.store.batch_upsert(kline_rows(symbol.id, "1h", [T0, T0 + HOUR]))
    api.store.batch_upsert(kline_rows(symbol.id, "1m", [T0, T0 + 60_000, T0 + 120_000]))

    assert routes.delete_kline_series(symbol.id, "1h")["deleted_count"] == 2
    assert api.store.count(symbol.id, "1h") == 0
    assert api.sync.get_status(symbol.id, "1h").auto_gap_fill_enabled is False

    assert routes.delete_symbol_klines(symbol.id)["deleted_count"] == 3
    assert api.store.count(symbol.id, "1m") == 0
    assert api.sync.get_status(symbol.id, "1m").total_klines == 0


def test_delete_series_rejects_unknown_interval(api, symbol):
    with pytest.raises(ValidationError):
        routes.delete_kline_series(symbol.id, "7m")


def test_list_klines_rejects_unknown_interval(api, symbol):
    with pytest.raises(ValidationError):
        routes.list_klines(symbol.id, "7m", start=None, end=None, limit=10)


def test_detect_and_fill_gap(api, symbol, exchange):
    api.store.batch_upsert(kline_rows(symbol.id, "1h", [T0, T0 + 2 * HOUR]))
    exchange.available["1h"] = [T0 + HOUR]

    detected = routes.detect_gaps(SeriesRequest(symbol_id=symbol.id, interval="1h"))
    assert detected.new_gap_count == 1
    gap_id = detected.gaps[0].id

    filled = routes.fill_gap(gap_id)
    assert filled["success"] is True
    assert filled["synced_count"] == 1
    assert routes.get_gap(gap_id).status == "FILLED"

    listed = routes.list_gaps(symbol_id=symbol.id, interval=None, status="FILLED", page=1, page_size=50)
    assert listed.total == 1


def test_unknown_gap_raises_not_found(api):
    with pytest.raises(NotFoundError):
        routes.get_gap(404)


def test_history_sync_accepts_iso_times(api, symbol, exchange):
    api.history.clock = FakeClock(T0)
    exchange.available["1h"] = [T0 - HOUR]
    request = HistorySyncRequest(
        symbol_id=symbol.id,
        interval="1h",
        start_time="2023-11-14T19:00:00Z",
        end_time=T0,
    )

    response = routes.sync_history(request)

    assert response.synced_count == 1
    assert exchange.calls[0][2] == T0 - 3 * HOUR
    tasks = routes.list_tasks(symbol_id=symbol.id, interval=None, task_type="HISTORY", status=None, page=1, page_size=50)
    assert tasks.total == 1
    assert routes.get_task(tasks.items[0].id).status == "SUCCESS"


def test_realtime_endpoints(api, symbol):
    assert routes.start_realtime(symbol.id)["subscription_count"] == 2
    status = routes.realtime_status()
    assert status.enabled is True
    assert status.subscription_count == 2
    assert {s.interval for s in status.subscriptions} == {"1m", "1h"}
    assert routes.stop_all_realtime()["stopped_count"] == 2


def test_config_update_round_trip(api):
    updated = routes.update_config("sync.gap_fill.auto", ConfigUpdateRequest(value="true"))
    assert updated.config_value == "true"
    assert api.config.is_auto_gap_fill_enabled() is True
    assert [c.config_key for c in routes.list_config()] == ["sync.gap_fill.auto"]


def test_error_response_payload():
    response = routes.error_response("not_found", "Gap not found: 1", status_code=404)
    assert response.status_code == 404
    assert b'"error_code":"not_found"' in response.body

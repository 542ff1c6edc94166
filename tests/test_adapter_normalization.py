import threading
from decimal import Decimal
from types import SimpleNamespace

import pytest

from kline_sync.errors import OperationAborted
from kline_sync.exchanges.binance_adapter import BinanceAdapter, make_client, parse_kline_row

ROW_LATE = [1704067260000, "2.0", "2.1", "1.9", "2.05", "120.5", 1704067319999, "247.0", 12, "0", "0", "0"]
ROW_EARLY = [1704067200000, "1.0", "1.1", "0.9", "1.05", "100", 1704067259999, "105.0", 8, "0", "0", "0"]


def test_kline_row_parsed_to_decimals():
    kline = parse_kline_row(ROW_EARLY)
    assert kline.open_time_ms == 1704067200000
    assert kline.close_time_ms == 1704067259999
    assert kline.open == Decimal("1.0")
    assert isinstance(kline.volume, Decimal)
    assert kline.trade_count == 8
    assert kline.is_closed is True


def test_klines_sorted(monkeypatch):
    adapter = BinanceAdapter(base_url="http://exchange.invalid")
    monkeypatch.setattr(adapter, "_get_json", lambda path, params=None: [ROW_LATE, ROW_EARLY])

    response = adapter.get_klines("btcusdt", "1m", 1704067200000, 1704067319999, 1000)
    assert response.success is True
    assert [k.open_time_ms for k in response.klines] == [1704067200000, 1704067260000]


def test_request_failure_becomes_error_response(monkeypatch):
    adapter = BinanceAdapter(base_url="http://exchange.invalid")

    def boom(path, params=None):
        raise OSError("connection refused")

    monkeypatch.setattr(adapter, "_get_json", boom)
    monkeypatch.setattr("kline_sync.exchanges.binance_adapter.sleep_or_abort", lambda shutdown, seconds: None)
    response = adapter.get_klines("BTCUSDT", "1m", 0, 1, 1000)
    assert response.success is False
    assert "connection refused" in response.message


def test_retry_backoff_stops_at_shutdown(monkeypatch):
    shutdown = threading.Event()
    shutdown.set()
    adapter = BinanceAdapter(base_url="http://exchange.invalid", shutdown=shutdown)
    calls = []

    def refused(path, params=None):
        calls.append(path)
        raise OSError("connection refused")

    monkeypatch.setattr(adapter, "_get_json", refused)

    with pytest.raises(OperationAborted):
        adapter.get_klines("BTCUSDT", "1m", 0, 1, 1000)
    assert calls == ["/api/v3/klines"]


def test_make_client_passes_shutdown_through():
    shutdown = threading.Event()
    client = make_client(SimpleNamespace(base_url="http://exchange.invalid/"), shutdown=shutdown)
    assert client.base_url == "http://exchange.invalid"
    assert client.shutdown is shutdown

from decimal import Decimal

import pytest

from kline_sync.cache.ttl_cache import NullCache
from kline_sync.config import Settings
from kline_sync.container import build_services
from kline_sync.database import create_db_engine, create_session_factory, init_db, session_scope
from kline_sync.exchanges.base import ConnectionTestResult, ExchangeClient, ExchangeKline, KlineResponse
from kline_sync.exchanges.stream_registry import SubscriptionRegistry
from kline_sync.models import DataSource, Market, Symbol
from kline_sync.utils.intervals import interval_ms

# 2023-11-14T22:00:00Z, aligned to the hour
T0 = 1_699_999_200_000


def make_kline(open_time_ms: int, interval: str = "1h", price: str = "100.5", closed: bool = True) -> ExchangeKline:
    step = interval_ms(interval)
    p = Decimal(price)
    return ExchangeKline(
        open_time_ms=open_time_ms,
        close_time_ms=open_time_ms + step - 1,
        open=p,
        high=p + 1,
        low=p - 1,
        close=p,
        volume=Decimal("12.5"),
        quote_volume=Decimal("1256.25"),
        trade_count=7,
        is_closed=closed,
    )


def kline_rows(symbol_id: int, interval: str, open_times: list[int], price: str = "100.5") -> list[dict]:
    from kline_sync.services.kline_store import kline_row

    return [kline_row(symbol_id, interval, make_kline(t, interval, price)) for t in open_times]


class FakeExchangeClient(ExchangeClient):
    """Serves klines from an in-memory grid and records every request."""

    name = "fake"

    def __init__(self):
        self.available: dict[str, list[int]] = {}
        self.calls: list[tuple[str, str, int, int, int]] = []
        self.fail_message: str | None = None
        self.closed = 0

    def get_klines(self, symbol, interval, start_ms, end_ms, limit):
        self.calls.append((symbol, interval, start_ms, end_ms, limit))
        if self.fail_message:
            return KlineResponse.error(self.fail_message)
        times = [t for t in self.available.get(interval, []) if start_ms <= t <= end_ms][:limit]
        return KlineResponse.ok([make_kline(t, interval) for t in times])

    def get_exchange_info(self):
        return {"symbols": []}

    def test_connection(self):
        return ConnectionTestResult(success=True, message="ok", latency_ms=0.0)

    def close(self):
        self.closed += 1


class FakeClock:
    def __init__(self, now_ms: int):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float):
        self.now_ms += int(seconds * 1000)


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        request_interval_ms=0,
        retry_attempts=1,
        backfill_initial_delay_seconds=0,
        backfill_poll_seconds=0.01,
        scheduler_enabled=False,
    )


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def exchange():
    return FakeExchangeClient()


@pytest.fixture
def stream():
    return SubscriptionRegistry()


@pytest.fixture
def services(session_factory, test_settings, exchange, stream):
    svc = build_services(
        session_factory,
        settings=test_settings,
        stream=stream,
        client_factory=lambda data_source: exchange,
        cache=NullCache(),
    )
    yield svc
    svc.shutdown.set()


@pytest.fixture
def symbol(session_factory):
    with session_scope(session_factory) as session:
        source = DataSource(name="binance-main", exchange_type="BINANCE", enabled=True, deleted=False)
        session.add(source)
        session.flush()
        market = Market(data_source_id=source.id, name="Spot", market_type="SPOT", enabled=True)
        session.add(market)
        session.flush()
        sym = Symbol(
            market_id=market.id,
            symbol="BTCUSDT",
            base_asset="BTC",
            quote_asset="USDT",
            realtime_sync_enabled=True,
            history_sync_enabled=True,
            sync_intervals="1m,1h",
        )
        session.add(sym)
        session.flush()
    return sym


def update_rows(session_factory, model, row_id: int, **values):
    with session_scope(session_factory) as session:
        row = session.get(model, row_id)
        for key, value in values.items():
            setattr(row, key, value)

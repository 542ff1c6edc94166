from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from kline_sync.config import settings
from kline_sync.errors import OperationAborted
from kline_sync.exchanges.base import ConnectionTestResult, ExchangeClient, ExchangeKline, KlineResponse
from kline_sync.utils.shutdown import sleep_or_abort
from kline_sync.utils.validators import to_decimal, to_native_int

logger = logging.getLogger(__name__)

SUPPORTED_EXCHANGE_TYPES = {"BINANCE"}


def parse_kline_row(row: list[Any]) -> ExchangeKline:
    """Convert one /api/v3/klines array into an ExchangeKline."""
    return ExchangeKline(
        open_time_ms=to_native_int(row[0]),
        open=to_decimal(row[1]),
        high=to_decimal(row[2]),
        low=to_decimal(row[3]),
        close=to_decimal(row[4]),
        volume=to_decimal(row[5]),
        close_time_ms=to_native_int(row[6]),
        quote_volume=to_decimal(row[7] if len(row) > 7 else None, default=to_decimal(0)),
        trade_count=to_native_int(row[8] if len(row) > 8 else None),
        is_closed=True,
    )


class BinanceAdapter(ExchangeClient):
    name = "binance"

    def __init__(
        self,
        base_url: str | None = None,
        timeout_seconds: int | None = None,
        shutdown: threading.Event | None = None,
    ):
        self.base_url = (base_url or settings.binance_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.request_timeout_seconds
        self.shutdown = shutdown if shutdown is not None else threading.Event()

    def _retry(self, fn):
        delay = settings.retry_backoff_base_seconds
        last_error = None
        for attempt in range(settings.retry_attempts):
            try:
                return fn()
            except Exception as exc:
                last_error = exc
                if attempt < settings.retry_attempts - 1:
                    sleep_or_abort(self.shutdown, delay)
                    delay *= 2
        raise last_error

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        query = f"?{urlencode(params)}" if params else ""
        request = Request(f"{self.base_url}{path}{query}", headers={"User-Agent": "kline-sync/1.0"})
        with urlopen(request, timeout=self.timeout_seconds) as response:
            return json.loads(response.read().decode("utf-8"))

    def get_klines(self, symbol: str, interval: str, start_ms: int, end_ms: int, limit: int) -> KlineResponse:
        params = {
            "symbol": symbol.upper(),
            "interval": interval,
            "startTime": start_ms,
            "endTime": end_ms,
            "limit": limit,
        }
        try:
            rows = self._retry(lambda: self._get_json("/api/v3/klines", params))
        except OperationAborted:
            raise
        except Exception as exc:
            logger.warning(f"Binance klines request failed for {symbol} {interval}: {exc}")
            return KlineResponse.error(str(exc))

        if not isinstance(rows, list):
            return KlineResponse.error(f"Unexpected klines payload: {rows!r}")
        klines = [parse_kline_row(row) for row in rows]
        klines.sort(key=lambda item: item.open_time_ms)
        return KlineResponse.ok(klines)

    def get_exchange_info(self) -> dict[str, Any]:
        return self._retry(lambda: self._get_json("/api/v3/exchangeInfo"))

    def test_connection(self) -> ConnectionTestResult:
        started = time.perf_counter()
        try:
            self._get_json("/api/v3/ping")
        except Exception as exc:
            return ConnectionTestResult(success=False, message=f"Connection failed: {exc}")
        latency = (time.perf_counter() - started) * 1000
        return ConnectionTestResult(success=True, message="Connection OK", latency_ms=round(latency, 3))


def make_client(data_source, shutdown: threading.Event | None = None) -> ExchangeClient:
    """Build a REST client for a data source row. Retry backoff stops early once `shutdown` is set."""
    return BinanceAdapter(base_url=getattr(data_source, "base_url", None) or None, shutdown=shutdown)

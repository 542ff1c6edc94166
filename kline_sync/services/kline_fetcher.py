"""
Paged kline fetch shared by history sync, gap filling and reconnect backfill.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from kline_sync.config import Settings, settings as default_settings
from kline_sync.errors import CircuitOpenError, OperationAborted, UpstreamError
from kline_sync.exchanges.base import ExchangeClient, KlineResponse
from kline_sync.internal_metrics import MetricsCollector
from kline_sync.resilience_circuit_breaker import SourceCircuitBreaker
from kline_sync.services.kline_store import KlineStore, kline_row
from kline_sync.utils.shutdown import check_shutdown, sleep_or_abort

logger = logging.getLogger(__name__)


@dataclass
class FetchOutcome:
    synced: int = 0
    last_open_time_ms: int | None = None
    pages: int = 0


class KlinePager:
    def __init__(
        self,
        store: KlineStore,
        breaker: SourceCircuitBreaker,
        metrics: MetricsCollector,
        shutdown: threading.Event,
        settings: Settings = default_settings,
    ):
        self.store = store
        self.breaker = breaker
        self.metrics = metrics
        self.shutdown = shutdown
        self.page_size = settings.max_klines_per_request
        self.request_interval_seconds = settings.request_interval_ms / 1000

    def _request(
        self, client: ExchangeClient, source: str, symbol: str, interval: str, start_ms: int, end_ms: int
    ) -> KlineResponse:
        if not self.breaker.allow(source):
            raise CircuitOpenError(
                f"Circuit open for data source {source}, retry in {self.breaker.retry_after(source):.0f}s"
            )

        started = time.perf_counter()
        try:
            response = client.get_klines(symbol, interval, start_ms, end_ms, self.page_size)
        except OperationAborted:
            raise
        except Exception as exc:
            latency = (time.perf_counter() - started) * 1000
            self.breaker.record_failure(source, str(exc))
            self.metrics.record_request(source, success=False, latency_ms=latency)
            raise UpstreamError(f"Failed to fetch klines for {symbol} {interval}: {exc}") from exc

        latency = (time.perf_counter() - started) * 1000
        if not response.success:
            self.breaker.record_failure(source, response.message)
            self.metrics.record_request(source, success=False, latency_ms=latency)
            raise UpstreamError(f"Failed to fetch klines for {symbol} {interval}: {response.message}")

        self.breaker.record_success(source)
        self.metrics.record_request(source, success=True, latency_ms=latency, klines=len(response.klines))
        return response

    def fetch_range(
        self,
        client: ExchangeClient,
        source: str,
        symbol: str,
        symbol_id: int,
        interval: str,
        start_ms: int,
        end_ms: int,
    ) -> FetchOutcome:
        """Page [start_ms, end_ms] from the exchange, upserting each page as it arrives."""
        outcome = FetchOutcome()
        cursor = start_ms
        while cursor <= end_ms:
            check_shutdown(self.shutdown)
            response = self._request(client, source, symbol, interval, cursor, end_ms)
            klines = sorted(response.klines, key=lambda item: item.open_time_ms)
            outcome.pages += 1
            if not klines:
                break

            outcome.synced += self.store.batch_upsert(kline_row(symbol_id, interval, k) for k in klines)
            page_last = klines[-1].open_time_ms
            if outcome.last_open_time_ms is None or page_last > outcome.last_open_time_ms:
                outcome.last_open_time_ms = page_last

            if len(klines) < self.page_size:
                break
            next_cursor = page_last + 1
            if next_cursor <= cursor:
                logger.warning(f"Exchange returned no progress for {symbol} {interval} at {cursor}, stopping")
                break
            cursor = next_cursor
            sleep_or_abort(self.shutdown, self.request_interval_seconds)

        logger.debug(
            f"Fetched {outcome.synced} klines for {symbol} {interval} in {outcome.pages} pages",
            extra={"symbol_id": symbol_id, "interval": interval, "start_ms": start_ms, "end_ms": end_ms},
        )
        return outcome

"""
Realtime sync.
Owns live kline subscriptions, persists closed klines as they arrive and
queues a REST backfill when a stream comes back after a long disconnect.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable

from kline_sync.config import Settings, settings as default_settings
from kline_sync.exchanges.base import (
    ClientFactory,
    ExchangeKline,
    StreamManager,
    SubscriptionInfo,
    parse_subscription_key,
    subscription_key,
)
from kline_sync.exchanges.binance_adapter import make_client
from kline_sync.observability import observability
from kline_sync.services.config_service import SYNC_REALTIME_ENABLED, SystemConfigService, as_bool
from kline_sync.services.kline_fetcher import KlinePager
from kline_sync.services.kline_store import KlineStore, kline_row
from kline_sync.services.sync_filter import SyncFilter
from kline_sync.services.sync_service import SyncService
from kline_sync.utils.validators import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillJob:
    data_source_id: int
    symbol_id: int
    symbol_code: str
    interval: str
    start_ms: int
    end_ms: int


class RealtimeSyncService:
    def __init__(
        self,
        stream: StreamManager,
        sync_filter: SyncFilter,
        sync_service: SyncService,
        store: KlineStore,
        pager: KlinePager,
        config_service: SystemConfigService,
        shutdown: threading.Event,
        settings: Settings = default_settings,
        client_factory: ClientFactory = make_client,
        clock: Callable[[], int] = now_ms,
    ):
        self.stream = stream
        self.sync_filter = sync_filter
        self.sync_service = sync_service
        self.store = store
        self.pager = pager
        self.config_service = config_service
        self.shutdown = shutdown
        self.client_factory = client_factory
        self.clock = clock
        self.backfill_threshold_ms = settings.reconnect_backfill_threshold_seconds * 1000
        self.initial_delay_seconds = settings.backfill_initial_delay_seconds
        self.poll_seconds = settings.backfill_poll_seconds

        self._disconnects: dict[str, int] = {}
        self._disconnects_lock = threading.Lock()
        self._backfills: queue.Queue[BackfillJob] = queue.Queue()
        self._consumer: threading.Thread | None = None

        self.stream.set_callbacks(self.handle_closed_kline, self.handle_disconnect)
        self.config_service.add_listener(SYNC_REALTIME_ENABLED, self._on_config_changed)

    # Subscriptions

    def start(self, symbol_id: int) -> int:
        """Subscribe every configured interval of a symbol. Returns the number of new subscriptions."""
        ctx = self.sync_filter.load_context(symbol_id)
        if not self.sync_filter.is_eligible_for_realtime(ctx):
            logger.warning(f"{ctx.symbol.symbol} is not eligible for realtime sync")
            return 0

        count = 0
        for interval in ctx.intervals:
            if self.stream.subscribe(ctx.data_source, ctx.symbol, interval):
                count += 1
        logger.info(f"Started realtime sync for {ctx.symbol.symbol}: {count} subscriptions")
        return count

    def stop(self, symbol_id: int) -> int:
        count = self.stream.unsubscribe_by_symbol(symbol_id)
        logger.info(f"Stopped realtime sync for symbol {symbol_id}: {count} subscriptions")
        return count

    def stop_by_data_source(self, data_source_id: int) -> int:
        count = self.stream.unsubscribe_by_data_source(data_source_id)
        logger.info(f"Stopped realtime sync for data source {data_source_id}: {count} subscriptions")
        return count

    def stop_all(self) -> int:
        count = self.stream.unsubscribe_all()
        logger.info(f"Stopped all realtime sync: {count} subscriptions")
        return count

    def start_all(self) -> int:
        if not self.config_service.is_realtime_sync_enabled():
            logger.warning("Realtime sync is disabled globally, not starting any subscriptions")
            return 0
        total = 0
        for ctx in self.sync_filter.realtime_contexts():
            try:
                total += self.start(ctx.symbol.id)
            except Exception as e:
                logger.error(f"Failed to start realtime sync for {ctx.symbol.symbol}: {e}")
        logger.info(f"Started realtime sync for all enabled symbols: {total} subscriptions")
        return total

    def subscription_count(self) -> int:
        return self.stream.subscription_count()

    def connected_count(self) -> int:
        return self.stream.connected_count()

    def subscriptions(self) -> list[SubscriptionInfo]:
        return self.stream.subscriptions()

    def is_subscribed(self, data_source_id: int, symbol_id: int, interval: str) -> bool:
        return self.stream.is_subscribed(data_source_id, symbol_id, interval)

    def pending_backfills(self) -> int:
        return self._backfills.unfinished_tasks

    def disconnected_keys(self) -> list[str]:
        with self._disconnects_lock:
            return sorted(self._disconnects)

    # Stream callbacks; these never raise into the transport.

    def handle_closed_kline(self, key: str, kline: ExchangeKline):
        if kline is None or not kline.is_closed:
            return
        try:
            _, symbol_id, interval = parse_subscription_key(key)
            if self.store.upsert(kline_row(symbol_id, interval, kline)):
                self.sync_service.update_status(symbol_id, interval, kline.open_time_ms, 1)
                observability.mark_sync_success("realtime")
                logger.debug(f"Saved realtime kline {key} open_time={kline.open_time_ms}")
        except Exception as e:
            logger.error(f"Failed to process kline event for {key}: {e}")

    def handle_disconnect(self, key: str):
        with self._disconnects_lock:
            self._disconnects[key] = self.clock()
        logger.warning(f"Stream disconnected, recorded disconnect time for {key}")

    def on_reconnect(self, data_source_id: int, symbol_id: int, interval: str) -> bool:
        """Queue a backfill when the stream was down for at least the threshold. Returns True if queued."""
        key = subscription_key(data_source_id, symbol_id, interval)
        with self._disconnects_lock:
            disconnected_at = self._disconnects.pop(key, None)
        self.stream.mark_connected(key, True)
        if disconnected_at is None:
            logger.debug(f"No disconnect time recorded for {key}")
            return False

        now = self.clock()
        elapsed = now - disconnected_at
        if elapsed < self.backfill_threshold_ms:
            logger.debug(f"Disconnect of {elapsed} ms on {key} is below threshold, not backfilling")
            return False

        try:
            ctx = self.sync_filter.load_context(symbol_id)
        except Exception as e:
            logger.error(f"Cannot queue backfill for {key}: {e}")
            return False
        self._backfills.put(
            BackfillJob(data_source_id, symbol_id, ctx.symbol.symbol, interval, disconnected_at, now)
        )
        logger.info(f"Queued backfill for {key}, disconnected for {elapsed // 1000}s")
        return True

    # Backfill consumer

    def process_backfill_queue(self) -> int:
        """Drain the queue once. Per-job failures are logged and skipped."""
        processed = 0
        while True:
            try:
                job = self._backfills.get_nowait()
            except queue.Empty:
                return processed
            try:
                self._backfill(job)
            except Exception as e:
                logger.error(f"Backfill failed for {job}: {e}")
            finally:
                self._backfills.task_done()
            processed += 1

    def _backfill(self, job: BackfillJob):
        ctx = self.sync_filter.load_context(job.symbol_id)
        if not ctx.data_source.enabled or ctx.data_source.deleted:
            logger.warning(f"Data source {job.data_source_id} is disabled, dropping backfill")
            return
        logger.info(
            f"Backfilling {job.symbol_code} {job.interval} from {job.start_ms} to {job.end_ms}",
            extra={"symbol_id": job.symbol_id, "interval": job.interval},
        )
        client = self.client_factory(ctx.data_source)
        try:
            outcome = self.pager.fetch_range(
                client, ctx.data_source.name, job.symbol_code, job.symbol_id, job.interval, job.start_ms, job.end_ms
            )
        finally:
            client.close()
        if outcome.synced > 0:
            self.sync_service.update_status(job.symbol_id, job.interval, outcome.last_open_time_ms, outcome.synced)
            observability.mark_sync_success("backfill")
        logger.info(f"Backfill for {job.symbol_code} {job.interval} saved {outcome.synced} klines")

    def _consume(self):
        if self.shutdown.wait(self.initial_delay_seconds):
            return
        while not self.shutdown.is_set():
            try:
                self.process_backfill_queue()
            except Exception as e:
                logger.error(f"Backfill consumer iteration failed: {e}", exc_info=True)
            if self.shutdown.wait(self.poll_seconds):
                return

    def start_consumer(self):
        if self._consumer is not None and self._consumer.is_alive():
            return
        self._consumer = threading.Thread(target=self._consume, name="realtime-backfill", daemon=True)
        self._consumer.start()
        logger.info("Realtime backfill consumer started")

    def shutdown_service(self, timeout: float = 5.0):
        self.shutdown.set()
        self.stream.shutdown()
        if self._consumer is not None:
            self._consumer.join(timeout)
            self._consumer = None
        logger.info("Realtime sync service stopped")

    # Global switch

    def on_realtime_enabled_changed(self, enabled: bool) -> int:
        if enabled:
            logger.info("Realtime sync enabled globally, starting subscriptions")
            return self.start_all()
        logger.info("Realtime sync disabled globally, stopping subscriptions")
        return self.stop_all()

    def _on_config_changed(self, key: str, old_value: str | None, new_value: str | None):
        self.on_realtime_enabled_changed(as_bool(new_value))

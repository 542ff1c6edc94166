"""
Historical sync.
Range sync splits a window into segments and pages each segment from the
exchange; incremental sync catches a series up from its watermark to now.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from kline_sync.config import Settings, settings as default_settings
from kline_sync.errors import OperationAborted, StateConflictError, UpstreamError, ValidationError
from kline_sync.exchanges.base import ClientFactory
from kline_sync.exchanges.binance_adapter import SUPPORTED_EXCHANGE_TYPES, make_client
from kline_sync.observability import observability
from kline_sync.services.kline_fetcher import KlinePager
from kline_sync.services.kline_store import KlineStore
from kline_sync.services.sync_filter import SymbolContext, SyncFilter, SyncTarget
from kline_sync.services.sync_service import SyncService
from kline_sync.utils.intervals import DAY_MS, HOUR_MS, interval_ms, validate_interval
from kline_sync.utils.shutdown import check_shutdown
from kline_sync.utils.validators import now_ms, truncate_to_minute, validate_time_range

logger = logging.getLogger(__name__)


@dataclass
class SeriesSyncResult:
    symbol_id: int
    interval: str
    success: bool
    klines: int = 0
    error: str | None = None


@dataclass
class IncrementalSyncSummary:
    success_count: int = 0
    failure_count: int = 0
    total_klines: int = 0
    results: list[SeriesSyncResult] = field(default_factory=list)

    @property
    def total_symbols(self) -> int:
        return len({r.symbol_id for r in self.results})

    @property
    def total_processed(self) -> int:
        return len(self.results)

    def add_success(self, symbol_id: int, interval: str, klines: int):
        self.success_count += 1
        self.total_klines += klines
        self.results.append(SeriesSyncResult(symbol_id, interval, True, klines))

    def add_failure(self, symbol_id: int, interval: str, error: str):
        self.failure_count += 1
        self.results.append(SeriesSyncResult(symbol_id, interval, False, 0, error))


def split_segments(start_ms: int, end_ms: int, segment_ms: int) -> list[tuple[int, int]]:
    """Inclusive [start, end] sub-ranges of at most segment_ms each, the next starting 1 ms later."""
    segments = []
    cursor = start_ms
    while cursor <= end_ms:
        segment_end = min(cursor + segment_ms, end_ms)
        segments.append((cursor, segment_end))
        cursor = segment_end + 1
    return segments


class HistorySyncService:
    def __init__(
        self,
        sync_filter: SyncFilter,
        sync_service: SyncService,
        store: KlineStore,
        pager: KlinePager,
        shutdown: threading.Event,
        settings: Settings = default_settings,
        client_factory: ClientFactory = make_client,
        clock: Callable[[], int] = now_ms,
    ):
        self.sync_filter = sync_filter
        self.sync_service = sync_service
        self.store = store
        self.pager = pager
        self.shutdown = shutdown
        self.client_factory = client_factory
        self.clock = clock
        self.segment_ms = settings.segment_days * DAY_MS
        self.first_sync_lookback_ms = settings.first_sync_lookback_hours * HOUR_MS

    def _validate(self, symbol_id: int | None, interval: str | None, start_ms: int | None, end_ms: int | None):
        if symbol_id is None:
            raise ValidationError("symbol id is required")
        validate_interval(interval)
        validate_time_range(start_ms, end_ms)
        if start_ms > self.clock():
            raise ValidationError("start time must not be in the future")

    def _check_source(self, ctx: SymbolContext):
        if not ctx.data_source.enabled or ctx.data_source.deleted:
            raise StateConflictError(f"Data source {ctx.data_source.name} is not enabled")
        if not ctx.market.enabled:
            raise StateConflictError(f"Market {ctx.market.name} is not enabled")
        if (ctx.data_source.exchange_type or "").upper() not in SUPPORTED_EXCHANGE_TYPES:
            raise StateConflictError(f"Unsupported exchange type: {ctx.data_source.exchange_type}")

    def sync_range(self, symbol_id: int, interval: str, start_ms: int, end_ms: int) -> int:
        """Sync [start_ms, end_ms] for one series and return the number of klines written."""
        self._validate(symbol_id, interval, start_ms, end_ms)
        ctx = self.sync_filter.load_context(symbol_id)
        self._check_source(ctx)

        task = self.sync_service.create_history_task(symbol_id, interval, start_ms, end_ms)
        try:
            self.sync_service.start_task(task.id)
            client = self.client_factory(ctx.data_source)
            try:
                total = self._sync_segments(client, ctx, interval, start_ms, end_ms, task.id)
            finally:
                client.close()
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            self.sync_service.fail_task(task.id, message)
            logger.error(
                f"History sync failed for {ctx.symbol.symbol} {interval}: {message}",
                extra={"symbol_id": symbol_id, "interval": interval, "task_id": task.id},
            )
            if isinstance(e, OperationAborted):
                raise
            raise UpstreamError(f"History sync failed: {message}") from e

        self.sync_service.complete_task(task.id, total)
        self.sync_service.update_status(symbol_id, interval, self.store.max_open_time(symbol_id, interval), total)
        observability.mark_sync_success("history")
        logger.info(
            f"History sync completed for {ctx.symbol.symbol} {interval}: {total} klines",
            extra={"symbol_id": symbol_id, "interval": interval, "task_id": task.id},
        )
        return total

    def _sync_segments(self, client, ctx: SymbolContext, interval: str, start_ms: int, end_ms: int, task_id: int) -> int:
        total = 0
        for segment_start, segment_end in split_segments(start_ms, end_ms, self.segment_ms):
            check_shutdown(self.shutdown)
            outcome = self.pager.fetch_range(
                client,
                ctx.data_source.name,
                ctx.symbol.symbol,
                ctx.symbol.id,
                interval,
                segment_start,
                segment_end,
            )
            total += outcome.synced
            self.sync_service.update_synced_count(task_id, total)
            logger.debug(f"Segment [{segment_start}, {segment_end}] synced {outcome.synced} klines")
        return total

    def sync_incremental(self, symbol_id: int, interval: str) -> int:
        validate_interval(interval)
        end_ms = truncate_to_minute(self.clock())
        status = self.sync_service.get_status(symbol_id, interval)
        if status is None or status.last_kline_time_ms is None:
            start_ms = end_ms - self.first_sync_lookback_ms
            logger.info(f"First sync for symbol {symbol_id} {interval}, backfilling the lookback window")
        else:
            start_ms = status.last_kline_time_ms + interval_ms(interval)
            if start_ms >= end_ms:
                logger.debug(f"Symbol {symbol_id} {interval} is already up to date")
                return 0
        return self.sync_range(symbol_id, interval, start_ms, end_ms)

    def sync_all_incremental(self, targets: list[SyncTarget] | None = None) -> IncrementalSyncSummary:
        """Incrementally sync `targets`, or every history-eligible series when none are given."""
        summary = IncrementalSyncSummary()
        if targets is None:
            targets = self.sync_filter.gap_detect_targets()
        logger.info(f"Starting incremental sync for {len(targets)} series")
        for target in targets:
            if self.shutdown.is_set():
                logger.warning("Shutdown requested, stopping incremental sync")
                break
            try:
                synced = self.sync_incremental(target.symbol_id, target.interval)
                summary.add_success(target.symbol_id, target.interval, synced)
            except Exception as e:
                logger.error(f"Incremental sync failed for {target.symbol} {target.interval}: {e}")
                summary.add_failure(target.symbol_id, target.interval, getattr(e, "message", None) or str(e))

        logger.info(
            f"Incremental sync completed: {summary.total_symbols} symbols, {summary.success_count} succeeded, "
            f"{summary.failure_count} failed, {summary.total_klines} klines"
        )
        return summary

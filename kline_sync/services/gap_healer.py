"""
Gap filling.
Drives gaps through PENDING -> FILLING -> FILLED by fetching the missing span,
with bounded retries, manual batches and the scheduled auto fill.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from kline_sync.errors import CircuitOpenError, OperationAborted, StateConflictError
from kline_sync.exchanges.base import ClientFactory
from kline_sync.exchanges.binance_adapter import SUPPORTED_EXCHANGE_TYPES, make_client
from kline_sync.models import DataGap, GapStatus
from kline_sync.observability import observability
from kline_sync.services.config_service import SystemConfigService
from kline_sync.services.gap_detector import GapDetector
from kline_sync.services.kline_fetcher import KlinePager
from kline_sync.services.sync_filter import SyncFilter
from kline_sync.services.sync_service import SyncService
from kline_sync.utils.shutdown import sleep_or_abort

logger = logging.getLogger(__name__)

_NOT_PENDING_MESSAGES = {
    GapStatus.FILLED.value: "Gap is already filled",
    GapStatus.FILLING.value: "Gap is currently being filled",
    GapStatus.FAILED.value: "Gap has failed and must be reset before filling again",
}


@dataclass
class GapFillResult:
    success: bool
    gap_id: int
    synced_count: int = 0
    message: str = ""
    task_id: int | None = None

    @classmethod
    def ok(cls, gap_id: int, synced_count: int, task_id: int | None = None) -> "GapFillResult":
        return cls(True, gap_id, synced_count, f"Filled gap with {synced_count} klines", task_id)

    @classmethod
    def failure(cls, gap_id: int, message: str, task_id: int | None = None) -> "GapFillResult":
        return cls(False, gap_id, 0, message, task_id)


@dataclass
class BatchGapFillResult:
    total: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    total_synced: int = 0
    disabled: bool = False
    message: str = ""
    results: list[GapFillResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @classmethod
    def disabled_result(cls) -> "BatchGapFillResult":
        return cls(disabled=True, message="Automatic gap fill is disabled")

    def add(self, result: GapFillResult):
        self.results.append(result)
        if result.success:
            self.success_count += 1
            self.total_synced += result.synced_count
        else:
            self.failure_count += 1

    def skip(self, gap_id: int, reason: str):
        self.skipped_count += 1
        self.skipped.append(f"gap {gap_id}: {reason}")


class GapHealer:
    def __init__(
        self,
        detector: GapDetector,
        sync_filter: SyncFilter,
        sync_service: SyncService,
        pager: KlinePager,
        config_service: SystemConfigService,
        shutdown: threading.Event,
        client_factory: ClientFactory = make_client,
    ):
        self.detector = detector
        self.sync_filter = sync_filter
        self.sync_service = sync_service
        self.pager = pager
        self.config_service = config_service
        self.shutdown = shutdown
        self.client_factory = client_factory

    def fill_gap(self, gap_id: int) -> GapFillResult:
        gap = self.detector.get(gap_id)
        if gap.status != GapStatus.PENDING.value:
            return GapFillResult.failure(gap_id, _NOT_PENDING_MESSAGES.get(gap.status, f"Unexpected gap status {gap.status}"))

        ctx = self.sync_filter.load_context(gap.symbol_id)
        if not ctx.owners_enabled:
            return GapFillResult.failure(gap_id, "Data source or market is disabled")
        if (ctx.data_source.exchange_type or "").upper() not in SUPPORTED_EXCHANGE_TYPES:
            return GapFillResult.failure(gap_id, f"Unsupported exchange type: {ctx.data_source.exchange_type}")

        if not self.detector.claim(gap_id):
            return GapFillResult.failure(gap_id, "Gap was claimed by another worker")

        task_id = None
        client = None
        # Until the gap is FILLED or charged a retry, the finally hands it back to PENDING.
        settled = False
        try:
            task_id = self.sync_service.create_gap_fill_task(
                gap.symbol_id, gap.interval, gap.gap_start_ms, gap.gap_end_ms
            ).id
            self.sync_service.start_task(task_id)
            logger.info(
                f"Filling gap {gap_id} for {ctx.symbol.symbol} {gap.interval} [{gap.gap_start_ms}, {gap.gap_end_ms}]",
                extra={"gap_id": gap_id, "task_id": task_id},
            )
            client = self.client_factory(ctx.data_source)
            outcome = self.pager.fetch_range(
                client,
                ctx.data_source.name,
                ctx.symbol.symbol,
                gap.symbol_id,
                gap.interval,
                gap.gap_start_ms,
                gap.gap_end_ms,
            )
            self.detector.transition(gap_id, GapStatus.FILLED)
            settled = True
        except CircuitOpenError as e:
            # Nothing reached the exchange, so the retry budget is left alone.
            self._fail_task(task_id, e.message)
            logger.warning(f"Gap {gap_id} deferred: {e.message}", extra={"gap_id": gap_id})
            return GapFillResult.failure(gap_id, e.message, task_id)
        except OperationAborted as e:
            self._fail_task(task_id, e.message)
            raise
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            self._fail_task(task_id, message)
            self._record_failure(gap, message)
            settled = True
            return GapFillResult.failure(gap_id, message, task_id)
        finally:
            if client is not None:
                client.close()
            if not settled:
                self._release(gap_id)

        self.sync_service.complete_task(task_id, outcome.synced)
        self.sync_service.update_status(gap.symbol_id, gap.interval, outcome.last_open_time_ms, outcome.synced)
        observability.mark_sync_success("gap_fill")
        logger.info(f"Gap {gap_id} filled with {outcome.synced} klines")
        return GapFillResult.ok(gap_id, outcome.synced, task_id)

    def _fail_task(self, task_id: int | None, message: str):
        if task_id is not None:
            self.sync_service.fail_task(task_id, message)

    def _release(self, gap_id: int):
        try:
            self.detector.transition(gap_id, GapStatus.PENDING)
        except Exception as e:
            logger.error(f"Could not hand gap {gap_id} back to PENDING: {e}", extra={"gap_id": gap_id})

    def _record_failure(self, gap: DataGap, message: str):
        max_retry = self.config_service.gap_fill_max_retry()
        current = gap.retry_count or 0
        target = GapStatus.FAILED if current + 1 >= max_retry else GapStatus.PENDING
        self.detector.transition(gap.id, target, error_message=message, retry_count=current + 1)
        logger.warning(
            f"Gap {gap.id} fill attempt {current + 1}/{max_retry} failed, now {target.value}: {message}",
            extra={"gap_id": gap.id},
        )

    def _delay_seconds(self) -> float:
        return max(self.config_service.gap_fill_interval_ms(), 0) / 1000

    def batch_fill(self, gap_ids: list[int]) -> BatchGapFillResult:
        """Fill gaps one after another with the configured delay between items."""
        batch = BatchGapFillResult(total=len(gap_ids))
        delay = self._delay_seconds()
        for index, gap_id in enumerate(gap_ids):
            try:
                if index > 0:
                    sleep_or_abort(self.shutdown, delay)
                batch.add(self.fill_gap(gap_id))
            except OperationAborted as e:
                batch.message = f"Aborted after {index} of {len(gap_ids)} gaps: {e.message}"
                logger.warning(batch.message)
                return batch
            except Exception as e:
                logger.error(f"Failed to fill gap {gap_id}: {e}", exc_info=True)
                batch.add(GapFillResult.failure(gap_id, getattr(e, "message", None) or str(e)))

        batch.message = f"Filled {batch.success_count} of {batch.total} gaps"
        return batch

    def auto_fill(self) -> BatchGapFillResult:
        if not self.config_service.is_auto_gap_fill_enabled():
            logger.debug("Automatic gap fill is disabled, skipping run")
            return BatchGapFillResult.disabled_result()

        gaps = self.detector.pending(self.config_service.gap_fill_batch_size())
        batch = BatchGapFillResult(total=len(gaps))
        delay = self._delay_seconds()
        attempted = 0
        eligible = {(target.symbol_id, target.interval) for target in self.sync_filter.auto_fill_targets()}
        for gap in gaps:
            if (gap.symbol_id, gap.interval) not in eligible:
                batch.skip(gap.id, "series not eligible for history sync")
                continue
            status = self.sync_service.get_status(gap.symbol_id, gap.interval)
            if status is None or not status.auto_gap_fill_enabled:
                batch.skip(gap.id, "auto gap fill disabled for series")
                continue
            try:
                if attempted > 0:
                    sleep_or_abort(self.shutdown, delay)
                attempted += 1
                batch.add(self.fill_gap(gap.id))
            except OperationAborted as e:
                batch.message = f"Aborted auto fill: {e.message}"
                logger.warning(batch.message)
                return batch
            except Exception as e:
                logger.error(f"Auto fill failed for gap {gap.id}: {e}", exc_info=True)
                batch.add(GapFillResult.failure(gap.id, getattr(e, "message", None) or str(e)))

        batch.message = (
            f"Auto fill: {batch.success_count} filled, {batch.failure_count} failed, {batch.skipped_count} skipped"
        )
        logger.info(batch.message)
        return batch

    def reset_failed_gap(self, gap_id: int) -> DataGap:
        """Manual FAILED -> PENDING with a fresh retry budget."""
        current = self.detector.get(gap_id)
        if current.status != GapStatus.FAILED.value:
            raise StateConflictError(f"Gap {gap_id} is {current.status}, only FAILED gaps can be reset")
        gap = self.detector.transition(gap_id, GapStatus.PENDING, retry_count=0, clear_error=True)
        logger.info(f"Gap {gap_id} reset to PENDING")
        return gap

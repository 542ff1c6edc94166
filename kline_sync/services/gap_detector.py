"""
Gap detection and the gap state machine.

A gap is an inclusive span [gap_start_ms, gap_end_ms] of missing candles in an
otherwise time-ordered series. Gaps move through

    PENDING -> FILLING -> FILLED
    FILLING -> PENDING   (failure, retries left)
    FILLING -> FAILED    (failure, retries exhausted)
    FAILED  -> PENDING   (manual reset)

and FILLED never changes again.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from sqlalchemy import func, update

from kline_sync.database import SessionFactory, session_scope
from kline_sync.errors import NotFoundError, StateConflictError
from kline_sync.models import DataGap, GapStatus
from kline_sync.services.kline_store import KlineStore
from kline_sync.services.sync_filter import SyncFilter
from kline_sync.utils.intervals import interval_ms, validate_interval

logger = logging.getLogger(__name__)

TOLERANCE_MS = 1000

UNRESOLVED_STATUSES = (GapStatus.PENDING.value, GapStatus.FILLING.value, GapStatus.FAILED.value)

_TRANSITIONS: dict[GapStatus, frozenset[GapStatus]] = {
    GapStatus.PENDING: frozenset({GapStatus.FILLING}),
    GapStatus.FILLING: frozenset({GapStatus.FILLED, GapStatus.PENDING, GapStatus.FAILED}),
    GapStatus.FAILED: frozenset({GapStatus.PENDING}),
    GapStatus.FILLED: frozenset(),
}


def can_transition(current: GapStatus | str, target: GapStatus | str) -> bool:
    try:
        current, target = GapStatus(current), GapStatus(target)
    except ValueError:
        return False
    return target in _TRANSITIONS[current]


def find_gaps(open_times: list[int], step_ms: int) -> list[tuple[int, int, int]]:
    """Scan ascending open times and return (gap_start, gap_end, missing_count) spans."""
    spans = []
    for current, following in zip(open_times, open_times[1:]):
        actual = following - current
        if actual <= step_ms + TOLERANCE_MS:
            continue
        missing = (actual - step_ms) // step_ms
        if missing <= 0:
            continue
        gap_start = current + step_ms
        gap_end = following - step_ms
        if gap_end < gap_start:
            continue
        spans.append((gap_start, gap_end, missing))
    return spans


@dataclass
class GapDetectResult:
    success: bool
    message: str
    symbol_count: int = 0
    interval_count: int = 0
    new_gap_count: int = 0
    total_gap_count: int = 0
    gaps: list[DataGap] = field(default_factory=list)

    @classmethod
    def failure(cls, message: str) -> "GapDetectResult":
        return cls(success=False, message=message)


class GapDetector:
    def __init__(self, session_factory: SessionFactory, store: KlineStore, sync_filter: SyncFilter):
        self.session_factory = session_factory
        self.store = store
        self.sync_filter = sync_filter
        self._series_locks: dict[tuple[int, str], threading.Lock] = {}
        self._series_locks_guard = threading.Lock()

    def _series_lock(self, symbol_id: int, interval: str) -> threading.Lock:
        with self._series_locks_guard:
            return self._series_locks.setdefault((symbol_id, interval), threading.Lock())

    # Detection

    def detect(self, symbol_id: int, interval: str) -> GapDetectResult:
        validate_interval(interval)
        ctx = self.sync_filter.load_context(symbol_id)
        if not self.sync_filter.is_eligible_for_history(ctx, interval):
            return GapDetectResult.failure(
                f"Symbol {ctx.symbol.symbol} {interval} is not eligible for history sync"
            )

        open_times = self.store.open_times(symbol_id, interval)
        if len(open_times) < 2:
            return GapDetectResult(
                success=True,
                message="Not enough klines to detect gaps",
                symbol_count=1,
                interval_count=1,
                total_gap_count=self.unresolved_count(symbol_id, interval),
            )

        spans = find_gaps(open_times, interval_ms(interval))
        created: list[DataGap] = []
        # Overlap check and insert must not interleave with another detect of the same series.
        with self._series_lock(symbol_id, interval), session_scope(self.session_factory) as session:
            for gap_start, gap_end, missing in spans:
                if self._overlaps(session, symbol_id, interval, gap_start, gap_end):
                    continue
                gap = DataGap(
                    symbol_id=symbol_id,
                    interval=interval,
                    gap_start_ms=gap_start,
                    gap_end_ms=gap_end,
                    missing_count=missing,
                    status=GapStatus.PENDING.value,
                    retry_count=0,
                )
                session.add(gap)
                session.flush()
                created.append(gap)

        if created:
            logger.info(
                f"Detected {len(created)} new gaps for {ctx.symbol.symbol} {interval}",
                extra={"symbol_id": symbol_id, "interval": interval},
            )
        return GapDetectResult(
            success=True,
            message=f"Detected {len(created)} new gaps",
            symbol_count=1,
            interval_count=1,
            new_gap_count=len(created),
            total_gap_count=self.unresolved_count(symbol_id, interval),
            gaps=created,
        )

    def detect_all(self) -> GapDetectResult:
        targets = self.sync_filter.gap_detect_targets()
        new_gaps = 0
        for target in targets:
            try:
                result = self.detect(target.symbol_id, target.interval)
                new_gaps += result.new_gap_count
            except Exception as e:
                logger.error(
                    f"Gap detection failed for {target.symbol} {target.interval}: {e}",
                    exc_info=True,
                    extra={"symbol_id": target.symbol_id, "interval": target.interval},
                )

        total = self.unresolved_count()
        logger.info(f"Gap detection finished: {len(targets)} series, {new_gaps} new gaps, {total} unresolved")
        return GapDetectResult(
            success=True,
            message=f"Scanned {len(targets)} series",
            symbol_count=len({t.symbol_id for t in targets}),
            interval_count=len(targets),
            new_gap_count=new_gaps,
            total_gap_count=total,
        )

    def _overlaps(self, session, symbol_id: int, interval: str, start_ms: int, end_ms: int) -> bool:
        return (
            session.query(DataGap.id)
            .filter(
                DataGap.symbol_id == symbol_id,
                DataGap.interval == interval,
                DataGap.gap_start_ms <= end_ms,
                DataGap.gap_end_ms >= start_ms,
            )
            .first()
            is not None
        )

    # State machine

    def transition(
        self,
        gap_id: int,
        target: GapStatus,
        error_message: str | None = None,
        retry_count: int | None = None,
        clear_error: bool = False,
    ) -> DataGap:
        with session_scope(self.session_factory) as session:
            gap = self._load(session, gap_id)
            if not can_transition(gap.status, target):
                raise StateConflictError(f"Gap {gap_id} cannot move from {gap.status} to {target.value}")
            gap.status = target.value
            if error_message is not None or clear_error or target == GapStatus.FILLED:
                gap.error_message = error_message
            if retry_count is not None:
                gap.retry_count = retry_count
            return gap

    def claim(self, gap_id: int) -> bool:
        """Atomically move a gap from PENDING to FILLING. False if someone else got it first."""
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(DataGap)
                .where(DataGap.id == gap_id, DataGap.status == GapStatus.PENDING.value)
                .values(status=GapStatus.FILLING.value)
            )
            return result.rowcount == 1

    # Queries

    def _load(self, session, gap_id: int) -> DataGap:
        gap = session.get(DataGap, gap_id)
        if gap is None:
            raise NotFoundError(f"Gap not found: {gap_id}")
        return gap

    def get(self, gap_id: int) -> DataGap:
        with session_scope(self.session_factory) as session:
            return self._load(session, gap_id)

    def list_gaps(
        self,
        symbol_id: int | None = None,
        interval: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[DataGap], int]:
        with session_scope(self.session_factory) as session:
            query = session.query(DataGap)
            if symbol_id is not None:
                query = query.filter(DataGap.symbol_id == symbol_id)
            if interval:
                query = query.filter(DataGap.interval == interval)
            if status:
                query = query.filter(DataGap.status == status)
            total = query.count()
            offset = (max(page, 1) - 1) * page_size
            items = (
                query.order_by(DataGap.symbol_id.asc(), DataGap.interval.asc(), DataGap.gap_start_ms.asc())
                .offset(offset)
                .limit(page_size)
                .all()
            )
            return items, total

    def pending(self, limit: int) -> list[DataGap]:
        with session_scope(self.session_factory) as session:
            return (
                session.query(DataGap)
                .filter(DataGap.status == GapStatus.PENDING.value)
                .order_by(DataGap.created_at.asc(), DataGap.id.asc())
                .limit(limit)
                .all()
            )

    def count_by_status(self, symbol_id: int | None = None, interval: str | None = None) -> dict[str, int]:
        with session_scope(self.session_factory) as session:
            query = session.query(DataGap.status, func.count(DataGap.id))
            if symbol_id is not None:
                query = query.filter(DataGap.symbol_id == symbol_id)
            if interval:
                query = query.filter(DataGap.interval == interval)
            counts = dict(query.group_by(DataGap.status).all())
        return {status.value: counts.get(status.value, 0) for status in GapStatus}

    def unresolved_count(self, symbol_id: int | None = None, interval: str | None = None) -> int:
        counts = self.count_by_status(symbol_id, interval)
        return sum(counts[status] for status in UNRESOLVED_STATUSES)

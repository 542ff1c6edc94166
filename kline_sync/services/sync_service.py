"""
Sync bookkeeping.
SyncTask rows audit every history, gap-fill and realtime run; SyncStatus rows
hold the per-series watermark, candle count and auto gap fill switch.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from kline_sync.database import SessionFactory, session_scope
from kline_sync.errors import NotFoundError, StateConflictError
from kline_sync.models import SyncStatus, SyncTask, TaskStatus, TaskType
from kline_sync.utils.intervals import validate_interval

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncService:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    # Tasks

    def create_task(
        self,
        symbol_id: int,
        interval: str,
        task_type: TaskType,
        start_time_ms: int | None = None,
        end_time_ms: int | None = None,
        max_retries: int = 3,
    ) -> SyncTask:
        validate_interval(interval)
        with session_scope(self.session_factory) as session:
            task = SyncTask(
                symbol_id=symbol_id,
                interval=interval,
                task_type=task_type.value,
                status=TaskStatus.PENDING.value,
                start_time_ms=start_time_ms,
                end_time_ms=end_time_ms,
                synced_count=0,
                retry_count=0,
                max_retries=max_retries,
            )
            session.add(task)
            session.flush()
        logger.info(
            f"Created {task_type.value} task {task.id} for symbol {symbol_id} {interval}",
            extra={"task_id": task.id, "symbol_id": symbol_id, "interval": interval},
        )
        return task

    def create_history_task(self, symbol_id: int, interval: str, start_time_ms: int, end_time_ms: int) -> SyncTask:
        return self.create_task(symbol_id, interval, TaskType.HISTORY, start_time_ms, end_time_ms)

    def create_gap_fill_task(self, symbol_id: int, interval: str, start_time_ms: int, end_time_ms: int) -> SyncTask:
        return self.create_task(symbol_id, interval, TaskType.GAP_FILL, start_time_ms, end_time_ms)

    def _load_task(self, session, task_id: int) -> SyncTask:
        task = session.get(SyncTask, task_id)
        if task is None:
            raise NotFoundError(f"Sync task not found: {task_id}")
        return task

    def start_task(self, task_id: int) -> SyncTask:
        with session_scope(self.session_factory) as session:
            task = self._load_task(session, task_id)
            if task.status != TaskStatus.PENDING.value:
                raise StateConflictError(f"Task {task_id} is {task.status}, only PENDING tasks can start")
            task.status = TaskStatus.RUNNING.value
            return task

    def complete_task(self, task_id: int, synced_count: int) -> SyncTask:
        with session_scope(self.session_factory) as session:
            task = self._load_task(session, task_id)
            task.status = TaskStatus.SUCCESS.value
            task.synced_count = synced_count
            task.error_message = None
        logger.info(f"Task {task_id} completed, synced {synced_count} klines")
        return task

    def fail_task(self, task_id: int, error_message: str) -> SyncTask:
        with session_scope(self.session_factory) as session:
            task = self._load_task(session, task_id)
            task.status = TaskStatus.FAILED.value
            task.error_message = error_message
        logger.warning(f"Task {task_id} failed: {error_message}")
        return task

    def update_synced_count(self, task_id: int, synced_count: int):
        with session_scope(self.session_factory) as session:
            self._load_task(session, task_id).synced_count = synced_count

    def retry_task(self, task_id: int) -> SyncTask:
        """Put a FAILED task back to PENDING while it has retries left."""
        with session_scope(self.session_factory) as session:
            task = self._load_task(session, task_id)
            if task.status != TaskStatus.FAILED.value:
                raise StateConflictError(f"Task {task_id} is {task.status}, only FAILED tasks can be retried")
            if task.retry_count >= task.max_retries:
                raise StateConflictError(f"Task {task_id} exhausted its {task.max_retries} retries")
            task.retry_count += 1
            task.status = TaskStatus.PENDING.value
            task.error_message = None
            return task

    def get_task(self, task_id: int) -> SyncTask:
        with session_scope(self.session_factory) as session:
            return self._load_task(session, task_id)

    def list_tasks(
        self,
        symbol_id: int | None = None,
        interval: str | None = None,
        task_type: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[SyncTask], int]:
        with session_scope(self.session_factory) as session:
            query = session.query(SyncTask)
            if symbol_id is not None:
                query = query.filter(SyncTask.symbol_id == symbol_id)
            if interval:
                query = query.filter(SyncTask.interval == interval)
            if task_type:
                query = query.filter(SyncTask.task_type == task_type)
            if status:
                query = query.filter(SyncTask.status == status)
            total = query.count()
            offset = (max(page, 1) - 1) * page_size
            items = query.order_by(SyncTask.id.desc()).offset(offset).limit(page_size).all()
            return items, total

    def running_tasks(self) -> list[SyncTask]:
        with session_scope(self.session_factory) as session:
            return session.query(SyncTask).filter(SyncTask.status == TaskStatus.RUNNING.value).all()

    def fail_stale_running_tasks(self, reason: str = "Interrupted by shutdown") -> int:
        with session_scope(self.session_factory) as session:
            count = (
                session.query(SyncTask)
                .filter(SyncTask.status == TaskStatus.RUNNING.value)
                .update(
                    {SyncTask.status: TaskStatus.FAILED.value, SyncTask.error_message: reason},
                    synchronize_session=False,
                )
            )
        if count:
            logger.warning(f"Marked {count} running tasks as FAILED: {reason}")
        return count

    # Status

    def get_status(self, symbol_id: int, interval: str) -> SyncStatus | None:
        with session_scope(self.session_factory) as session:
            return session.query(SyncStatus).filter_by(symbol_id=symbol_id, interval=interval).first()

    def _status_for_update(self, session, symbol_id: int, interval: str) -> SyncStatus:
        status = session.query(SyncStatus).filter_by(symbol_id=symbol_id, interval=interval).first()
        if status is None:
            status = SyncStatus(
                symbol_id=symbol_id,
                interval=interval,
                last_kline_time_ms=None,
                total_klines=0,
                auto_gap_fill_enabled=True,
            )
            session.add(status)
            session.flush()
        return status

    def get_or_create_status(self, symbol_id: int, interval: str) -> SyncStatus:
        validate_interval(interval)
        try:
            with session_scope(self.session_factory) as session:
                return self._status_for_update(session, symbol_id, interval)
        except IntegrityError:
            # Another writer created it first.
            return self.get_status(symbol_id, interval)

    def update_status(self, symbol_id: int, interval: str, last_kline_time_ms: int | None, synced_count: int) -> SyncStatus:
        """Advance the watermark to max(existing, new) and add to the candle count.

        Both columns are changed with single UPDATE statements so concurrent
        writers to the same series never lose an increment or move the
        watermark backwards.
        """
        validate_interval(interval)
        with session_scope(self.session_factory) as session:
            status = self._status_for_update(session, symbol_id, interval)
            session.execute(
                update(SyncStatus)
                .where(SyncStatus.id == status.id)
                .values(
                    total_klines=func.coalesce(SyncStatus.total_klines, 0) + max(synced_count, 0),
                    last_sync_time=_utcnow(),
                )
            )
            if last_kline_time_ms is not None:
                session.execute(
                    update(SyncStatus)
                    .where(
                        SyncStatus.id == status.id,
                        or_(
                            SyncStatus.last_kline_time_ms.is_(None),
                            SyncStatus.last_kline_time_ms < last_kline_time_ms,
                        ),
                    )
                    .values(last_kline_time_ms=last_kline_time_ms)
                )
            session.refresh(status)
            return status

    def set_auto_gap_fill_by_id(self, status_id: int, enabled: bool) -> SyncStatus:
        with session_scope(self.session_factory) as session:
            status = session.get(SyncStatus, status_id)
            if status is None:
                raise NotFoundError(f"Sync status not found: {status_id}")
            status.auto_gap_fill_enabled = enabled
            return status

    def reset_status(self, symbol_id: int, interval: str, last_kline_time_ms: int | None, total_klines: int) -> SyncStatus:
        """Overwrite the watermark and count after candles were removed."""
        validate_interval(interval)
        with session_scope(self.session_factory) as session:
            status = self._status_for_update(session, symbol_id, interval)
            status.last_kline_time_ms = last_kline_time_ms
            status.total_klines = max(total_klines, 0)
            status.auto_gap_fill_enabled = False
            status.last_sync_time = _utcnow()
            return status

    def list_status(self, symbol_id: int | None = None) -> list[SyncStatus]:
        with session_scope(self.session_factory) as session:
            query = session.query(SyncStatus)
            if symbol_id is not None:
                query = query.filter(SyncStatus.symbol_id == symbol_id)
            return query.order_by(SyncStatus.symbol_id.asc(), SyncStatus.interval.asc()).all()

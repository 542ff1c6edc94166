"""
Candle persistence.
Batched idempotent upserts keyed by (symbol_id, interval, open_time_ms) plus the
range and aggregate queries the detector and sync engines need.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import Session

from kline_sync.config import Settings, settings as default_settings
from kline_sync.database import SessionFactory, session_scope
from kline_sync.errors import ValidationError
from kline_sync.exchanges.base import ExchangeKline
from kline_sync.models import DataGap, Kline, SyncStatus
from kline_sync.utils.intervals import is_valid_interval, validate_interval

logger = logging.getLogger(__name__)

KEY_COLUMNS = ("symbol_id", "interval", "open_time_ms")
UPDATE_COLUMNS = (
    "open_price",
    "high_price",
    "low_price",
    "close_price",
    "volume",
    "quote_volume",
    "trade_count",
    "close_time_ms",
)
REQUIRED_COLUMNS = KEY_COLUMNS + ("open_price", "high_price", "low_price", "close_price", "close_time_ms")


def kline_row(symbol_id: int, interval: str, kline: ExchangeKline) -> dict[str, Any]:
    """Map an exchange kline onto a klines table row."""
    return {
        "symbol_id": symbol_id,
        "interval": interval,
        "open_time_ms": kline.open_time_ms,
        "open_price": kline.open,
        "high_price": kline.high,
        "low_price": kline.low,
        "close_price": kline.close,
        "volume": kline.volume,
        "quote_volume": kline.quote_volume,
        "trade_count": kline.trade_count,
        "close_time_ms": kline.close_time_ms,
    }


def _validate_row(row: dict[str, Any]):
    for column in REQUIRED_COLUMNS:
        if row.get(column) is None:
            raise ValidationError(f"Kline row is missing {column}")
    if not is_valid_interval(row["interval"]):
        raise ValidationError(f"Unsupported interval: {row['interval']}")


class KlineStore:
    def __init__(self, session_factory: SessionFactory, settings: Settings = default_settings):
        self.session_factory = session_factory
        self.batch_size = max(settings.upsert_batch_size, 1)

    # Writes

    def batch_upsert(self, rows: Iterable[dict[str, Any]]) -> int:
        """Insert or overwrite candles. Returns the number of rows written."""
        normalized: list[dict[str, Any]] = []
        for row in rows:
            _validate_row(row)
            item = {column: row[column] for column in REQUIRED_COLUMNS}
            item["volume"] = row.get("volume") or 0
            item["quote_volume"] = row.get("quote_volume") or 0
            item["trade_count"] = row.get("trade_count") or 0
            normalized.append(item)
        if not normalized:
            return 0

        # The same key twice in one statement is rejected by postgres; keep the last one.
        deduped = list({tuple(item[c] for c in KEY_COLUMNS): item for item in normalized}.values())

        written = 0
        with session_scope(self.session_factory) as session:
            for offset in range(0, len(deduped), self.batch_size):
                chunk = deduped[offset:offset + self.batch_size]
                self._upsert_chunk(session, chunk)
                written += len(chunk)
        logger.debug(f"Upserted {written} klines")
        return written

    def upsert(self, row: dict[str, Any]) -> bool:
        return self.batch_upsert([row]) == 1

    def _upsert_chunk(self, session: Session, chunk: list[dict[str, Any]]):
        table = Kline.__table__
        dialect = session.get_bind().dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            stmt = insert(table).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(KEY_COLUMNS),
                set_={column: stmt.excluded[column] for column in UPDATE_COLUMNS},
            )
            session.execute(stmt)
            return
        if dialect in ("mysql", "mariadb"):
            stmt = mysql.insert(table).values(chunk)
            stmt = stmt.on_duplicate_key_update({column: stmt.inserted[column] for column in UPDATE_COLUMNS})
            session.execute(stmt)
            return

        # Generic fallback: look up each key and overwrite or insert.
        for item in chunk:
            existing = (
                session.query(Kline)
                .filter_by(symbol_id=item["symbol_id"], interval=item["interval"], open_time_ms=item["open_time_ms"])
                .first()
            )
            if existing is None:
                session.add(Kline(**item))
            else:
                for column in UPDATE_COLUMNS:
                    setattr(existing, column, item[column])
        session.flush()

    # Reads

    def _series(self, session: Session, symbol_id: int, interval: str):
        return session.query(Kline).filter(Kline.symbol_id == symbol_id, Kline.interval == interval)

    def open_times(self, symbol_id: int, interval: str) -> list[int]:
        """All open times of a series in ascending order."""
        validate_interval(interval)
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(Kline.open_time_ms)
                .filter(Kline.symbol_id == symbol_id, Kline.interval == interval)
                .order_by(Kline.open_time_ms.asc())
                .all()
            )
            return [row[0] for row in rows]

    def list_range(
        self,
        symbol_id: int,
        interval: str,
        start_ms: int | None = None,
        end_ms: int | None = None,
        limit: int | None = None,
    ) -> list[Kline]:
        validate_interval(interval)
        with session_scope(self.session_factory) as session:
            query = self._series(session, symbol_id, interval)
            if start_ms is not None:
                query = query.filter(Kline.open_time_ms >= start_ms)
            if end_ms is not None:
                query = query.filter(Kline.open_time_ms <= end_ms)
            query = query.order_by(Kline.open_time_ms.asc())
            if limit:
                query = query.limit(limit)
            return query.all()

    def latest(self, symbol_id: int, interval: str) -> Kline | None:
        with session_scope(self.session_factory) as session:
            return self._series(session, symbol_id, interval).order_by(Kline.open_time_ms.desc()).first()

    def earliest(self, symbol_id: int, interval: str) -> Kline | None:
        with session_scope(self.session_factory) as session:
            return self._series(session, symbol_id, interval).order_by(Kline.open_time_ms.asc()).first()

    def max_open_time(self, symbol_id: int, interval: str) -> int | None:
        with session_scope(self.session_factory) as session:
            return (
                session.query(func.max(Kline.open_time_ms))
                .filter(Kline.symbol_id == symbol_id, Kline.interval == interval)
                .scalar()
            )

    def min_open_time(self, symbol_id: int, interval: str) -> int | None:
        with session_scope(self.session_factory) as session:
            return (
                session.query(func.min(Kline.open_time_ms))
                .filter(Kline.symbol_id == symbol_id, Kline.interval == interval)
                .scalar()
            )

    def count(self, symbol_id: int, interval: str) -> int:
        with session_scope(self.session_factory) as session:
            return self._series(session, symbol_id, interval).count()

    def count_in_range(self, symbol_id: int, interval: str, start_ms: int, end_ms: int) -> int:
        with session_scope(self.session_factory) as session:
            return (
                self._series(session, symbol_id, interval)
                .filter(Kline.open_time_ms >= start_ms, Kline.open_time_ms <= end_ms)
                .count()
            )

    # Deletes

    def delete_range(self, symbol_id: int, interval: str, start_ms: int, end_ms: int) -> int:
        """Delete candles in [start_ms, end_ms] and the gaps overlapping that span."""
        validate_interval(interval)
        if start_ms > end_ms:
            raise ValidationError("start time must not be after end time")
        with session_scope(self.session_factory) as session:
            deleted = (
                self._series(session, symbol_id, interval)
                .filter(Kline.open_time_ms >= start_ms, Kline.open_time_ms <= end_ms)
                .delete(synchronize_session=False)
            )
            gaps = (
                session.query(DataGap)
                .filter(
                    DataGap.symbol_id == symbol_id,
                    DataGap.interval == interval,
                    DataGap.gap_start_ms <= end_ms,
                    DataGap.gap_end_ms >= start_ms,
                )
                .delete(synchronize_session=False)
            )
            if deleted:
                self._recompute_status(session, symbol_id, interval)
        logger.info(
            f"Deleted {deleted} klines and {gaps} gaps for symbol {symbol_id} {interval}",
            extra={"symbol_id": symbol_id, "interval": interval, "start_ms": start_ms, "end_ms": end_ms},
        )
        return deleted

    def delete_series(self, symbol_id: int, interval: str) -> int:
        validate_interval(interval)
        with session_scope(self.session_factory) as session:
            deleted = self._series(session, symbol_id, interval).delete(synchronize_session=False)
            session.query(DataGap).filter(
                DataGap.symbol_id == symbol_id, DataGap.interval == interval
            ).delete(synchronize_session=False)
            if deleted:
                self._recompute_status(session, symbol_id, interval)
        logger.info(f"Deleted {deleted} klines for symbol {symbol_id} {interval}")
        return deleted

    def delete_symbol(self, symbol_id: int) -> int:
        with session_scope(self.session_factory) as session:
            intervals = [
                row[0]
                for row in session.query(Kline.interval).filter(Kline.symbol_id == symbol_id).distinct().all()
            ]
            deleted = session.query(Kline).filter(Kline.symbol_id == symbol_id).delete(synchronize_session=False)
            session.query(DataGap).filter(DataGap.symbol_id == symbol_id).delete(synchronize_session=False)
            for interval in intervals:
                self._recompute_status(session, symbol_id, interval)
        logger.info(f"Deleted {deleted} klines for symbol {symbol_id}")
        return deleted

    def _recompute_status(self, session: Session, symbol_id: int, interval: str):
        # Deletions open holes on purpose; auto fill stays off until someone re-enables it.
        session.flush()
        max_time, total = (
            session.query(func.max(Kline.open_time_ms), func.count(Kline.id))
            .filter(Kline.symbol_id == symbol_id, Kline.interval == interval)
            .one()
        )
        status = session.query(SyncStatus).filter_by(symbol_id=symbol_id, interval=interval).first()
        if status is None:
            status = SyncStatus(symbol_id=symbol_id, interval=interval)
            session.add(status)
        status.last_kline_time_ms = max_time
        status.total_klines = total or 0
        status.auto_gap_fill_enabled = False
        status.last_sync_time = datetime.now(timezone.utc)

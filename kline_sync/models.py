"""
Database models for the kline sync service.
Defines candle storage, gap records and the sync bookkeeping tables, plus the
read-only view of data sources, markets and symbols the engine needs for
eligibility checks.
"""
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

PRICE = Numeric(30, 12, asdecimal=True)


class GapStatus(str, Enum):
    PENDING = "PENDING"
    FILLING = "FILLING"
    FILLED = "FILLED"
    FAILED = "FAILED"


class TaskType(str, Enum):
    HISTORY = "HISTORY"
    GAP_FILL = "GAP_FILL"
    REALTIME = "REALTIME"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class DataSource(Base):
    """An exchange account/endpoint. Managed elsewhere; read here."""
    __tablename__ = "data_sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    exchange_type = Column(String(20), nullable=False, default="BINANCE")
    base_url = Column(String(255), nullable=True)
    ws_url = Column(String(255), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<DataSource(name={self.name}, exchange_type={self.exchange_type})>"


class Market(Base):
    __tablename__ = "markets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    data_source_id = Column(Integer, ForeignKey("data_sources.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    market_type = Column(String(20), nullable=False, default="SPOT")
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Market(name={self.name}, market_type={self.market_type})>"


class Symbol(Base):
    """A tradeable symbol and its sync configuration."""
    __tablename__ = "symbols"

    id = Column(Integer, primary_key=True, autoincrement=True)
    market_id = Column(Integer, ForeignKey("markets.id"), nullable=False, index=True)
    symbol = Column(String(32), nullable=False)
    base_asset = Column(String(16), nullable=True)
    quote_asset = Column(String(16), nullable=True)
    realtime_sync_enabled = Column(Boolean, nullable=False, default=False)
    history_sync_enabled = Column(Boolean, nullable=False, default=False)
    # comma separated interval codes, e.g. "1m,1h,1d"
    sync_intervals = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("market_id", "symbol", name="ux_symbols_market_symbol"),
    )

    def __repr__(self):
        return f"<Symbol(symbol={self.symbol}, market_id={self.market_id})>"


class Kline(Base):
    """One closed OHLCV candle for a symbol and interval."""
    __tablename__ = "klines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol_id = Column(Integer, ForeignKey("symbols.id"), nullable=False)
    interval = Column(String(4), nullable=False)
    open_time_ms = Column(BigInteger, nullable=False)
    open_price = Column(PRICE, nullable=False)
    high_price = Column(PRICE, nullable=False)
    low_price = Column(PRICE, nullable=False)
    close_price = Column(PRICE, nullable=False)
    volume = Column(PRICE, nullable=False, default=0)
    quote_volume = Column(PRICE, nullable=False, default=0)
    trade_count = Column(Integer, nullable=False, default=0)
    close_time_ms = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("symbol_id", "interval", "open_time_ms", name="ux_klines_symbol_interval_open_time"),
    )

    def __repr__(self):
        return (
            f"<Kline(symbol_id={self.symbol_id}, interval={self.interval}, "
            f"open_time_ms={self.open_time_ms})>"
        )


class DataGap(Base):
    """A detected missing span [gap_start_ms, gap_end_ms] of a series."""
    __tablename__ = "data_gaps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol_id = Column(Integer, ForeignKey("symbols.id"), nullable=False)
    interval = Column(String(4), nullable=False)
    gap_start_ms = Column(BigInteger, nullable=False)
    gap_end_ms = Column(BigInteger, nullable=False)
    missing_count = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default=GapStatus.PENDING.value, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_data_gaps_symbol_interval_start", "symbol_id", "interval", "gap_start_ms"),
    )
    # load server timestamps at flush so rows stay readable after the session closes
    __mapper_args__ = {"eager_defaults": True}

    def __repr__(self):
        return (
            f"<DataGap(id={self.id}, symbol_id={self.symbol_id}, interval={self.interval}, "
            f"status={self.status})>"
        )


class SyncStatus(Base):
    """Per-series watermark and counters."""
    __tablename__ = "sync_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol_id = Column(Integer, ForeignKey("symbols.id"), nullable=False)
    interval = Column(String(4), nullable=False)
    last_kline_time_ms = Column(BigInteger, nullable=True)
    total_klines = Column(BigInteger, nullable=False, default=0)
    auto_gap_fill_enabled = Column(Boolean, nullable=False, default=True)
    last_sync_time = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("symbol_id", "interval", name="ux_sync_status_symbol_interval"),
    )
    __mapper_args__ = {"eager_defaults": True}

    def __repr__(self):
        return (
            f"<SyncStatus(symbol_id={self.symbol_id}, interval={self.interval}, "
            f"last_kline_time_ms={self.last_kline_time_ms})>"
        )


class SyncTask(Base):
    """Audit record of one history, gap-fill or realtime run."""
    __tablename__ = "sync_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol_id = Column(Integer, ForeignKey("symbols.id"), nullable=False, index=True)
    interval = Column(String(4), nullable=False)
    task_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=TaskStatus.PENDING.value, index=True)
    start_time_ms = Column(BigInteger, nullable=True)
    end_time_ms = Column(BigInteger, nullable=True)
    synced_count = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"eager_defaults": True}

    def __repr__(self):
        return f"<SyncTask(id={self.id}, task_type={self.task_type}, status={self.status})>"


class SystemConfig(Base):
    __tablename__ = "system_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_key = Column(String(100), unique=True, nullable=False)
    config_value = Column(String(500), nullable=True)
    description = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"eager_defaults": True}

    def __repr__(self):
        return f"<SystemConfig(key={self.config_key}, value={self.config_value})>"

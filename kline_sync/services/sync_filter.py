"""Eligibility rules deciding which (symbol, interval) series each sync mode may touch."""
from __future__ import annotations

from dataclasses import dataclass

from kline_sync.database import SessionFactory, session_scope
from kline_sync.errors import NotFoundError
from kline_sync.models import DataSource, Market, Symbol
from kline_sync.services.config_service import SystemConfigService
from kline_sync.utils.intervals import parse_intervals


@dataclass(frozen=True)
class SymbolContext:
    symbol: Symbol
    market: Market
    data_source: DataSource

    @property
    def intervals(self) -> list[str]:
        return parse_intervals(self.symbol.sync_intervals)

    @property
    def owners_enabled(self) -> bool:
        return bool(self.market.enabled and self.data_source.enabled and not self.data_source.deleted)


@dataclass(frozen=True)
class SyncTarget:
    symbol_id: int
    symbol: str
    interval: str
    market_id: int
    data_source_id: int


class SyncFilter:
    def __init__(self, session_factory: SessionFactory, config_service: SystemConfigService):
        self.session_factory = session_factory
        self.config_service = config_service

    def load_context(self, symbol_id: int) -> SymbolContext:
        with session_scope(self.session_factory) as session:
            row = (
                session.query(Symbol, Market, DataSource)
                .join(Market, Symbol.market_id == Market.id)
                .join(DataSource, Market.data_source_id == DataSource.id)
                .filter(Symbol.id == symbol_id)
                .first()
            )
            if row is None:
                raise NotFoundError(f"Symbol not found: {symbol_id}")
            return SymbolContext(symbol=row[0], market=row[1], data_source=row[2])

    def _contexts(self, realtime: bool = False, history: bool = False) -> list[SymbolContext]:
        with session_scope(self.session_factory) as session:
            query = (
                session.query(Symbol, Market, DataSource)
                .join(Market, Symbol.market_id == Market.id)
                .join(DataSource, Market.data_source_id == DataSource.id)
                .filter(
                    Market.enabled.is_(True),
                    DataSource.enabled.is_(True),
                    DataSource.deleted.is_(False),
                )
            )
            if realtime:
                query = query.filter(Symbol.realtime_sync_enabled.is_(True))
            if history:
                query = query.filter(Symbol.history_sync_enabled.is_(True))
            rows = query.order_by(Symbol.id.asc()).all()
        return [SymbolContext(symbol=s, market=m, data_source=d) for s, m, d in rows]

    def _targets(self, contexts: list[SymbolContext]) -> list[SyncTarget]:
        return [
            SyncTarget(
                symbol_id=ctx.symbol.id,
                symbol=ctx.symbol.symbol,
                interval=interval,
                market_id=ctx.market.id,
                data_source_id=ctx.data_source.id,
            )
            for ctx in contexts
            for interval in ctx.intervals
        ]

    def gap_detect_targets(self) -> list[SyncTarget]:
        """History-enabled series with enabled owners. Ignores the global switches."""
        return self._targets(self._contexts(history=True))

    def history_targets(self) -> list[SyncTarget]:
        if not self.config_service.is_history_auto_sync_enabled():
            return []
        return self.gap_detect_targets()

    def auto_fill_targets(self) -> list[SyncTarget]:
        if not self.config_service.is_auto_gap_fill_enabled():
            return []
        return self.gap_detect_targets()

    def realtime_contexts(self) -> list[SymbolContext]:
        if not self.config_service.is_realtime_sync_enabled():
            return []
        return [ctx for ctx in self._contexts(realtime=True) if ctx.intervals]

    def is_eligible_for_history(self, ctx: SymbolContext, interval: str) -> bool:
        return bool(ctx.symbol.history_sync_enabled and ctx.owners_enabled and interval in ctx.intervals)

    def is_eligible_for_realtime(self, ctx: SymbolContext) -> bool:
        return bool(
            self.config_service.is_realtime_sync_enabled()
            and ctx.symbol.realtime_sync_enabled
            and ctx.owners_enabled
            and ctx.intervals
        )

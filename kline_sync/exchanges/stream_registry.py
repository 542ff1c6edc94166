from __future__ import annotations

import logging
from threading import Lock
from typing import Any

from kline_sync.exchanges.base import (
    ClosedKlineCallback,
    DisconnectCallback,
    ExchangeKline,
    StreamManager,
    SubscriptionInfo,
    subscription_key,
)

logger = logging.getLogger(__name__)


class SubscriptionRegistry(StreamManager):
    """Subscription bookkeeping for a kline stream.

    A websocket transport drives it through `dispatch_kline`, `dispatch_disconnect`
    and `mark_connected`; on its own it only records what is subscribed.
    """

    def __init__(self):
        self._subs: dict[str, SubscriptionInfo] = {}
        self._lock = Lock()
        self._on_kline: ClosedKlineCallback | None = None
        self._on_disconnect: DisconnectCallback | None = None

    def set_callbacks(self, on_kline: ClosedKlineCallback, on_disconnect: DisconnectCallback):
        self._on_kline = on_kline
        self._on_disconnect = on_disconnect

    def subscribe(self, data_source: Any, symbol: Any, interval: str) -> bool:
        key = subscription_key(data_source.id, symbol.id, interval)
        with self._lock:
            if key in self._subs:
                return False
            self._subs[key] = SubscriptionInfo(
                key=key,
                data_source_id=data_source.id,
                symbol_id=symbol.id,
                symbol=symbol.symbol,
                interval=interval,
                connected=True,
            )
        logger.info(f"Subscribed {key}")
        return True

    def _remove(self, predicate) -> int:
        with self._lock:
            keys = [key for key, sub in self._subs.items() if predicate(sub)]
            for key in keys:
                del self._subs[key]
        return len(keys)

    def unsubscribe_by_symbol(self, symbol_id: int) -> int:
        return self._remove(lambda sub: sub.symbol_id == symbol_id)

    def unsubscribe_by_data_source(self, data_source_id: int) -> int:
        return self._remove(lambda sub: sub.data_source_id == data_source_id)

    def unsubscribe_all(self) -> int:
        return self._remove(lambda sub: True)

    def subscriptions(self) -> list[SubscriptionInfo]:
        with self._lock:
            return list(self._subs.values())

    def mark_connected(self, key: str, connected: bool):
        with self._lock:
            sub = self._subs.get(key)
            if sub is not None:
                self._subs[key] = SubscriptionInfo(
                    key=sub.key,
                    data_source_id=sub.data_source_id,
                    symbol_id=sub.symbol_id,
                    symbol=sub.symbol,
                    interval=sub.interval,
                    connected=connected,
                )

    def dispatch_kline(self, key: str, kline: ExchangeKline):
        if self._on_kline is not None:
            self._on_kline(key, kline)

    def dispatch_disconnect(self, key: str):
        self.mark_connected(key, False)
        if self._on_disconnect is not None:
            self._on_disconnect(key)

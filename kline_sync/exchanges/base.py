from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable


@dataclass(frozen=True)
class ExchangeKline:
    open_time_ms: int
    close_time_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    quote_volume: Decimal = Decimal("0")
    trade_count: int = 0
    is_closed: bool = True


@dataclass
class KlineResponse:
    klines: list[ExchangeKline] = field(default_factory=list)
    success: bool = True
    message: str | None = None

    @classmethod
    def ok(cls, klines: list[ExchangeKline]) -> "KlineResponse":
        return cls(klines=klines, success=True)

    @classmethod
    def error(cls, message: str) -> "KlineResponse":
        return cls(klines=[], success=False, message=message)


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    latency_ms: float | None = None


class ExchangeClient(ABC):
    """REST contract the sync engine pulls history through."""

    name: str = "exchange"

    @abstractmethod
    def get_klines(
        self, symbol: str, interval: str, start_ms: int, end_ms: int, limit: int
    ) -> KlineResponse:
        """Fetch klines with open time in [start_ms, end_ms], oldest first."""
        raise NotImplementedError

    @abstractmethod
    def get_exchange_info(self) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def test_connection(self) -> ConnectionTestResult:
        raise NotImplementedError

    def close(self):
        pass


@dataclass(frozen=True)
class SubscriptionInfo:
    key: str
    data_source_id: int
    symbol_id: int
    symbol: str
    interval: str
    connected: bool


def subscription_key(data_source_id: int, symbol_id: int, interval: str) -> str:
    return f"{data_source_id}_{symbol_id}_{interval}"


def parse_subscription_key(key: str) -> tuple[int, int, str]:
    data_source_id, symbol_id, interval = key.split("_", 2)
    return int(data_source_id), int(symbol_id), interval


ClientFactory = Callable[[Any], ExchangeClient]
ClosedKlineCallback = Callable[[str, ExchangeKline], None]
DisconnectCallback = Callable[[str], None]


class StreamManager(ABC):
    """Live kline stream transport.

    Implementations call the closed-kline callback for each kline event on the
    subscription and the disconnect callback when a connection drops. After a
    reconnect they are expected to call RealtimeSyncService.on_reconnect, which
    marks the subscription connected again.
    """

    @abstractmethod
    def set_callbacks(self, on_kline: ClosedKlineCallback, on_disconnect: DisconnectCallback):
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, data_source: Any, symbol: Any, interval: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def unsubscribe_by_symbol(self, symbol_id: int) -> int:
        raise NotImplementedError

    @abstractmethod
    def unsubscribe_by_data_source(self, data_source_id: int) -> int:
        raise NotImplementedError

    @abstractmethod
    def unsubscribe_all(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def subscriptions(self) -> list[SubscriptionInfo]:
        raise NotImplementedError

    @abstractmethod
    def mark_connected(self, key: str, connected: bool):
        """Record the transport connection state of one subscription."""
        raise NotImplementedError

    def subscription_count(self) -> int:
        return len(self.subscriptions())

    def connected_count(self) -> int:
        return sum(1 for sub in self.subscriptions() if sub.connected)

    def is_subscribed(self, data_source_id: int, symbol_id: int, interval: str) -> bool:
        key = subscription_key(data_source_id, symbol_id, interval)
        return any(sub.key == key for sub in self.subscriptions())

    def shutdown(self):
        self.unsubscribe_all()

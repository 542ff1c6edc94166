"""
Service wiring.
Builds one set of services around a session factory and holds the instance the
HTTP routes and the lifespan share.
"""
from __future__ import annotations

import functools
import threading
from dataclasses import dataclass

from kline_sync.cache.ttl_cache import ConfigCache, TTLCache
from kline_sync.config import Settings, settings as default_settings
from kline_sync.database import SessionFactory
from kline_sync.exchanges.base import ClientFactory, StreamManager
from kline_sync.exchanges.binance_adapter import make_client
from kline_sync.exchanges.stream_registry import SubscriptionRegistry
from kline_sync.internal_metrics import MetricsCollector
from kline_sync.resilience_circuit_breaker import SourceCircuitBreaker
from kline_sync.scheduler import SyncScheduler
from kline_sync.services.config_service import SystemConfigService
from kline_sync.services.gap_detector import GapDetector
from kline_sync.services.gap_healer import GapHealer
from kline_sync.services.history_sync import HistorySyncService
from kline_sync.services.kline_fetcher import KlinePager
from kline_sync.services.kline_store import KlineStore
from kline_sync.services.realtime_sync import RealtimeSyncService
from kline_sync.services.sync_filter import SyncFilter
from kline_sync.services.sync_service import SyncService


@dataclass
class Services:
    settings: Settings
    shutdown: threading.Event
    cache: ConfigCache
    metrics: MetricsCollector
    circuit_breaker: SourceCircuitBreaker
    config: SystemConfigService
    store: KlineStore
    sync: SyncService
    sync_filter: SyncFilter
    pager: KlinePager
    detector: GapDetector
    healer: GapHealer
    history: HistorySyncService
    realtime: RealtimeSyncService
    scheduler: SyncScheduler


def build_services(
    session_factory: SessionFactory,
    settings: Settings = default_settings,
    stream: StreamManager | None = None,
    client_factory: ClientFactory | None = None,
    cache: ConfigCache | None = None,
) -> Services:
    shutdown = threading.Event()
    if client_factory is None:
        client_factory = functools.partial(make_client, shutdown=shutdown)
    cache = cache if cache is not None else TTLCache()
    metrics = MetricsCollector()
    breaker = SourceCircuitBreaker(
        failure_threshold=settings.circuit_failure_threshold,
        recovery_timeout_seconds=settings.circuit_recovery_timeout_seconds,
        half_open_max_attempts=settings.circuit_half_open_max_attempts,
    )
    config = SystemConfigService(session_factory, cache=cache, settings=settings)
    store = KlineStore(session_factory, settings=settings)
    sync = SyncService(session_factory)
    sync_filter = SyncFilter(session_factory, config)
    pager = KlinePager(store, breaker, metrics, shutdown, settings=settings)
    detector = GapDetector(session_factory, store, sync_filter)
    healer = GapHealer(detector, sync_filter, sync, pager, config, shutdown, client_factory=client_factory)
    history = HistorySyncService(sync_filter, sync, store, pager, shutdown, settings=settings, client_factory=client_factory)
    realtime = RealtimeSyncService(
        stream if stream is not None else SubscriptionRegistry(),
        sync_filter,
        sync,
        store,
        pager,
        config,
        shutdown,
        settings=settings,
        client_factory=client_factory,
    )
    scheduler = SyncScheduler(history, detector, healer, sync_filter, config, shutdown, settings=settings)
    return Services(
        settings=settings,
        shutdown=shutdown,
        cache=cache,
        metrics=metrics,
        circuit_breaker=breaker,
        config=config,
        store=store,
        sync=sync,
        sync_filter=sync_filter,
        pager=pager,
        detector=detector,
        healer=healer,
        history=history,
        realtime=realtime,
        scheduler=scheduler,
    )


_services: Services | None = None


def configure(services: Services) -> Services:
    global _services
    _services = services
    return services


def get_services() -> Services:
    global _services
    if _services is None:
        from kline_sync.database import SessionLocal

        _services = build_services(SessionLocal)
    return _services

from __future__ import annotations

import logging
from threading import Lock
from typing import Callable

from kline_sync.cache.ttl_cache import ConfigCache, TTLCache
from kline_sync.config import Settings, settings as default_settings
from kline_sync.database import SessionFactory, session_scope
from kline_sync.errors import NotFoundError, ValidationError
from kline_sync.models import SystemConfig

logger = logging.getLogger(__name__)

SYNC_REALTIME_ENABLED = "sync.realtime.enabled"
SYNC_HISTORY_AUTO = "sync.history.auto"
SYNC_GAP_FILL_AUTO = "sync.gap_fill.auto"
SYNC_GAP_FILL_MAX_RETRY = "sync.gap_fill.max_retry"
SYNC_GAP_FILL_BATCH_SIZE = "sync.gap_fill.batch_size"
SYNC_GAP_FILL_INTERVAL_MS = "sync.gap_fill.interval_ms"

DEFAULTS: dict[str, tuple[str, str]] = {
    SYNC_REALTIME_ENABLED: ("true", "Global switch for websocket realtime sync"),
    SYNC_HISTORY_AUTO: ("true", "Run scheduled incremental history sync"),
    SYNC_GAP_FILL_AUTO: ("false", "Run scheduled automatic gap fill"),
    SYNC_GAP_FILL_MAX_RETRY: ("3", "Attempts before a gap is marked FAILED"),
    SYNC_GAP_FILL_BATCH_SIZE: ("10", "Pending gaps taken per auto fill run"),
    SYNC_GAP_FILL_INTERVAL_MS: ("1000", "Delay between gap fills in a batch"),
}

ConfigListener = Callable[[str, str | None, str | None], None]


def as_bool(value: str | None) -> bool:
    return value is not None and (value.strip().lower() == "true" or value.strip() == "1")


class SystemConfigService:
    """Runtime switches stored in system_config behind a TTL read-through cache."""

    def __init__(
        self,
        session_factory: SessionFactory,
        cache: ConfigCache | None = None,
        settings: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.cache = cache if cache is not None else TTLCache()
        self.ttl_seconds = settings.config_cache_ttl_seconds
        self._listeners: dict[str, list[ConfigListener]] = {}
        self._listeners_lock = Lock()

    def add_listener(self, key: str, listener: ConfigListener):
        """Register a callback invoked synchronously after `key` changes."""
        with self._listeners_lock:
            self._listeners.setdefault(key, []).append(listener)

    def _read(self, key: str) -> str | None:
        with session_scope(self.session_factory) as session:
            row = session.query(SystemConfig).filter_by(config_key=key).first()
            return row.config_value if row else None

    def get_value(self, key: str, default: str | None = None) -> str | None:
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        value = self._read(key)
        if value is None:
            return default
        self.cache.set(key, value, self.ttl_seconds)
        return value

    def get_value_force_refresh(self, key: str) -> str | None:
        value = self._read(key)
        if value is None:
            self.cache.invalidate(key)
        else:
            self.cache.set(key, value, self.ttl_seconds)
        return value

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.get_value(key)
        if value is None:
            return default
        return as_bool(value)

    def get_int(self, key: str, default: int) -> int:
        value = self.get_value(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid integer config value for key {key}: {value}")
            return default

    def get_config(self, key: str) -> SystemConfig:
        with session_scope(self.session_factory) as session:
            row = session.query(SystemConfig).filter_by(config_key=key).first()
            if row is None:
                raise NotFoundError(f"Config not found: {key}")
            return row

    def list_all(self) -> list[SystemConfig]:
        with session_scope(self.session_factory) as session:
            return session.query(SystemConfig).order_by(SystemConfig.config_key.asc()).all()

    def update_value(self, key: str, value: str) -> bool:
        """Write a value, drop it from the cache and notify listeners if it changed."""
        if not key:
            raise ValidationError("config key is required")
        old_value = self.get_value_force_refresh(key)
        with session_scope(self.session_factory) as session:
            row = session.query(SystemConfig).filter_by(config_key=key).first()
            if row is None:
                description = DEFAULTS.get(key, (None, None))[1]
                session.add(SystemConfig(config_key=key, config_value=value, description=description))
            else:
                row.config_value = value
        self.cache.invalidate(key)
        logger.info(f"Updated config: key={key}, value={value}")

        changed = old_value != value
        if key == SYNC_REALTIME_ENABLED:
            # a missing row means the default, which is enabled
            old_enabled = as_bool(old_value) if old_value is not None else True
            changed = old_enabled != as_bool(value)
        if changed:
            self._notify(key, old_value, value)
        return True

    def _notify(self, key: str, old_value: str | None, new_value: str | None):
        with self._listeners_lock:
            listeners = list(self._listeners.get(key, ()))
        for listener in listeners:
            try:
                listener(key, old_value, new_value)
            except Exception as e:
                logger.error(f"Config listener failed for key {key}: {e}", exc_info=True)

    def seed_defaults(self) -> int:
        """Insert missing default keys; existing values are left alone."""
        created = 0
        with session_scope(self.session_factory) as session:
            existing = {row.config_key for row in session.query(SystemConfig.config_key).all()}
            for key, (value, description) in DEFAULTS.items():
                if key not in existing:
                    session.add(SystemConfig(config_key=key, config_value=value, description=description))
                    created += 1
        if created:
            logger.info(f"Seeded {created} default config keys")
        return created

    def refresh_cache(self, key: str | None = None):
        if key is None:
            self.cache.clear()
            logger.info("Config cache cleared")
        else:
            self.cache.invalidate(key)

    # Convenience getters

    def is_realtime_sync_enabled(self) -> bool:
        return self.get_bool(SYNC_REALTIME_ENABLED, True)

    def is_history_auto_sync_enabled(self) -> bool:
        return self.get_bool(SYNC_HISTORY_AUTO, True)

    def is_auto_gap_fill_enabled(self) -> bool:
        return self.get_bool(SYNC_GAP_FILL_AUTO, False)

    def gap_fill_max_retry(self) -> int:
        return self.get_int(SYNC_GAP_FILL_MAX_RETRY, 3)

    def gap_fill_batch_size(self) -> int:
        return self.get_int(SYNC_GAP_FILL_BATCH_SIZE, 10)

    def gap_fill_interval_ms(self) -> int:
        return self.get_int(SYNC_GAP_FILL_INTERVAL_MS, 1000)

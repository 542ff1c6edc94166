from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Any


class ConfigCache(ABC):
    """Read-through cache used for runtime config values."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: float):
        raise NotImplementedError

    @abstractmethod
    def invalidate(self, key: str):
        raise NotImplementedError

    @abstractmethod
    def clear(self):
        raise NotImplementedError

    def metrics(self) -> dict[str, int]:
        return {}


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache(ConfigCache):
    def __init__(self):
        self._store: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        now = time.time()
        with self._lock:
            entry = self._store.get(key)
            if not entry:
                self._misses += 1
                return None
            if entry.expires_at <= now:
                self._store.pop(key, None)
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float):
        with self._lock:
            self._store[key] = CacheEntry(value=value, expires_at=time.time() + ttl_seconds)

    def invalidate(self, key: str):
        with self._lock:
            self._store.pop(key, None)

    def clear(self):
        with self._lock:
            self._store.clear()

    def metrics(self) -> dict[str, int]:
        with self._lock:
            return {"hits": self._hits, "misses": self._misses, "size": len(self._store)}


class NullCache(ConfigCache):
    """Never stores anything; every read goes to the backing table."""

    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any, ttl_seconds: float):
        pass

    def invalidate(self, key: str):
        pass

    def clear(self):
        pass

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock


@dataclass
class SourceMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    klines_fetched: int = 0
    latency_total_ms: float = 0.0

    def avg_latency_ms(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.latency_total_ms / self.total_requests


class MetricsCollector:
    """Counts kline page requests per data source."""

    def __init__(self):
        self._per_source: dict[str, SourceMetrics] = {}
        self._lock = Lock()

    def _get(self, source: str) -> SourceMetrics:
        if source not in self._per_source:
            self._per_source[source] = SourceMetrics()
        return self._per_source[source]

    def record_request(self, source: str, success: bool, latency_ms: float, klines: int = 0):
        with self._lock:
            m = self._get(source)
            m.total_requests += 1
            m.latency_total_ms += max(latency_ms, 0.0)
            m.klines_fetched += max(klines, 0)
            if success:
                m.successful_requests += 1
            else:
                m.failed_requests += 1

    def source_status(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            out: dict[str, dict[str, float | int]] = {}
            for source, m in self._per_source.items():
                failure_rate = 0.0 if m.total_requests == 0 else (m.failed_requests / m.total_requests)
                out[source] = {
                    "total_requests": m.total_requests,
                    "successful_requests": m.successful_requests,
                    "failed_requests": m.failed_requests,
                    "klines_fetched": m.klines_fetched,
                    "failure_rate": round(failure_rate, 4),
                    "average_latency_ms": round(m.avg_latency_ms(), 3),
                }
            return out

    def global_metrics(self) -> dict[str, float | int | dict]:
        per = self.source_status()
        total_requests = sum(v["total_requests"] for v in per.values())
        total_klines = sum(v["klines_fetched"] for v in per.values())
        weighted_latency = sum((v["average_latency_ms"] * v["total_requests"]) for v in per.values())
        average_latency = 0.0 if total_requests == 0 else (weighted_latency / total_requests)
        return {
            "request_count": total_requests,
            "klines_fetched": total_klines,
            "average_latency_ms": round(average_latency, 3),
            "per_source": per,
        }

from kline_sync.internal_metrics import MetricsCollector


def test_metrics_counters_increment():
    m = MetricsCollector()
    m.record_request("binance-main", success=True, latency_ms=100, klines=1000)
    m.record_request("binance-main", success=False, latency_ms=200)

    status = m.source_status()["binance-main"]
    assert status["total_requests"] == 2
    assert status["successful_requests"] == 1
    assert status["failed_requests"] == 1
    assert status["klines_fetched"] == 1000
    assert status["failure_rate"] == 0.5


def test_global_metrics_aggregate_sources():
    m = MetricsCollector()
    m.record_request("a", success=True, latency_ms=10, klines=5)
    m.record_request("b", success=True, latency_ms=30, klines=7)

    out = m.global_metrics()
    assert out["request_count"] == 2
    assert out["klines_fetched"] == 12
    assert out["average_latency_ms"] == 20.0

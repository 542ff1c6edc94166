import pytest

from conftest import T0, FakeClock, update_rows
from kline_sync.errors import StateConflictError, UpstreamError, ValidationError
from kline_sync.models import DataSource, TaskStatus
from kline_sync.services.history_sync import split_segments

HOUR = 3_600_000
DAY = 24 * HOUR


def test_split_segments_are_inclusive_and_contiguous():
    segments = split_segments(0, 65 * DAY, 30 * DAY)
    assert segments == [
        (0, 30 * DAY),
        (30 * DAY + 1, 60 * DAY + 1),
        (60 * DAY + 2, 65 * DAY),
    ]
    assert split_segments(5, 5, DAY) == [(5, 5)]


def test_long_range_is_fetched_per_segment(services, symbol, exchange):
    services.history.clock = FakeClock(T0)

    synced = services.history.sync_range(symbol.id, "1d", T0 - 65 * DAY, T0)

    assert synced == 0
    assert len(exchange.calls) == 3
    assert exchange.calls[0][2] == T0 - 65 * DAY
    assert exchange.calls[-1][3] == T0
    items, total = services.sync.list_tasks(symbol_id=symbol.id)
    assert total == 1
    assert items[0].status == TaskStatus.SUCCESS.value


def test_range_sync_writes_klines_and_watermark(services, symbol, exchange):
    services.history.clock = FakeClock(T0)
    exchange.available["1h"] = [T0 - 3 * HOUR, T0 - 2 * HOUR, T0 - HOUR]

    synced = services.history.sync_range(symbol.id, "1h", T0 - 5 * HOUR, T0)

    assert synced == 3
    status = services.sync.get_status(symbol.id, "1h")
    assert status.last_kline_time_ms == T0 - HOUR
    assert status.total_klines == 3


def test_first_incremental_sync_covers_lookback_window(services, symbol, exchange):
    services.history.clock = FakeClock(T0 + 30_000)
    exchange.available["1h"] = [T0 - i * HOUR for i in range(1, 25)]

    synced = services.history.sync_incremental(symbol.id, "1h")

    assert synced == 24
    assert exchange.calls[0][2:4] == (T0 - DAY, T0)
    assert services.sync.get_status(symbol.id, "1h").last_kline_time_ms == T0 - HOUR


def test_incremental_sync_resumes_after_watermark(services, symbol, exchange):
    services.history.clock = FakeClock(T0)
    services.sync.update_status(symbol.id, "1h", T0 - 3 * HOUR, 10)

    services.history.sync_incremental(symbol.id, "1h")

    assert exchange.calls[0][2:4] == (T0 - 2 * HOUR, T0)


def test_incremental_sync_when_current_creates_no_task(services, symbol, exchange):
    services.history.clock = FakeClock(T0 + 59_000)
    services.sync.update_status(symbol.id, "1h", T0 - HOUR, 1)

    assert services.history.sync_incremental(symbol.id, "1h") == 0
    assert exchange.calls == []
    assert services.sync.list_tasks()[1] == 0


@pytest.mark.parametrize(
    "interval, start, end",
    [
        ("2m", T0 - HOUR, T0),
        ("1h", T0, T0 - HOUR),
        ("1h", None, T0),
        ("1h", T0 + DAY, T0 + 2 * DAY),
    ],
)
def test_invalid_range_rejected_without_task(services, symbol, exchange, interval, start, end):
    services.history.clock = FakeClock(T0)
    with pytest.raises(ValidationError):
        services.history.sync_range(symbol.id, interval, start, end)
    assert services.sync.list_tasks()[1] == 0
    assert exchange.calls == []


def test_disabled_data_source_rejected(services, session_factory, symbol):
    ctx = services.sync_filter.load_context(symbol.id)
    update_rows(session_factory, DataSource, ctx.data_source.id, deleted=True)
    services.history.clock = FakeClock(T0)
    with pytest.raises(StateConflictError):
        services.history.sync_range(symbol.id, "1h", T0 - HOUR, T0)


def test_upstream_failure_marks_task_failed(services, symbol, exchange):
    services.history.clock = FakeClock(T0)
    exchange.fail_message = "rate limited"

    with pytest.raises(UpstreamError):
        services.history.sync_range(symbol.id, "1h", T0 - 5 * HOUR, T0)

    items, total = services.sync.list_tasks()
    assert total == 1
    assert items[0].status == TaskStatus.FAILED.value
    assert "rate limited" in items[0].error_message
    assert exchange.closed == 1


def test_sync_all_incremental_summary(services, symbol, exchange):
    services.history.clock = FakeClock(T0)
    exchange.available["1h"] = [T0 - HOUR]

    summary = services.history.sync_all_incremental()

    assert summary.total_symbols == 1
    assert summary.total_processed == 2
    assert summary.success_count == 2
    assert summary.failure_count == 0
    assert summary.total_klines == 1


def test_sync_all_incremental_isolates_failures(services, symbol, exchange):
    services.history.clock = FakeClock(T0)
    exchange.fail_message = "down"

    summary = services.history.sync_all_incremental()

    assert summary.success_count == 0
    assert summary.failure_count == 2
    assert all(not r.success for r in summary.results)

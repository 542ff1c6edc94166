from conftest import T0, kline_rows, update_rows
from kline_sync.models import GapStatus, Symbol
from kline_sync.services.gap_detector import find_gaps

HOUR = 3_600_000


def test_find_gaps_spans():
    assert find_gaps([0, HOUR, 3 * HOUR], HOUR) == [(2 * HOUR, 2 * HOUR, 1)]
    assert find_gaps([0, HOUR, 2 * HOUR], HOUR) == []
    # small exchange clock skew is tolerated
    assert find_gaps([0, HOUR + 900], HOUR) == []
    assert find_gaps([0, 5 * HOUR], HOUR) == [(HOUR, 4 * HOUR, 4)]


def test_detect_single_missing_candle(services, symbol):
    services.store.batch_upsert(kline_rows(symbol.id, "1h", [T0, T0 + HOUR, T0 + 3 * HOUR]))

    result = services.detector.detect(symbol.id, "1h")

    assert result.success
    assert result.new_gap_count == 1
    gap = result.gaps[0]
    assert gap.gap_start_ms == T0 + 2 * HOUR
    assert gap.gap_end_ms == T0 + 2 * HOUR
    assert gap.missing_count == 1
    assert gap.status == GapStatus.PENDING.value
    assert gap.retry_count == 0


def test_redetect_does_not_duplicate(services, symbol):
    services.store.batch_upsert(kline_rows(symbol.id, "1h", [T0, T0 + HOUR, T0 + 3 * HOUR]))
    services.detector.detect(symbol.id, "1h")

    again = services.detector.detect(symbol.id, "1h")

    assert again.new_gap_count == 0
    assert again.total_gap_count == 1
    assert services.detector.list_gaps(symbol_id=symbol.id)[1] == 1


def test_adjacent_candles_have_no_gap(services, symbol):
    services.store.batch_upsert(kline_rows(symbol.id, "1h", [T0, T0 + HOUR]))
    result = services.detector.detect(symbol.id, "1h")
    assert result.success
    assert result.new_gap_count == 0


def test_not_enough_klines(services, symbol):
    services.store.batch_upsert(kline_rows(symbol.id, "1h", [T0]))
    result = services.detector.detect(symbol.id, "1h")
    assert result.success
    assert result.new_gap_count == 0
    assert "Not enough klines" in result.message


def test_ineligible_series_reports_failure(services, symbol, session_factory):
    services.store.batch_upsert(kline_rows(symbol.id, "1d", [T0, T0 + 5 * 24 * HOUR]))
    result = services.detector.detect(symbol.id, "1d")
    assert not result.success

    update_rows(session_factory, Symbol, symbol.id, history_sync_enabled=False)
    services.store.batch_upsert(kline_rows(symbol.id, "1h", [T0, T0 + 3 * HOUR]))
    assert not services.detector.detect(symbol.id, "1h").success
    assert services.detector.list_gaps()[1] == 0


def test_detect_all_covers_history_series(services, symbol):
    services.store.batch_upsert(kline_rows(symbol.id, "1h", [T0, T0 + 3 * HOUR]))
    services.store.batch_upsert(kline_rows(symbol.id, "1m", [T0, T0 + 60_000, T0 + 5 * 60_000]))

    result = services.detector.detect_all()

    assert result.success
    assert result.symbol_count == 1
    assert result.interval_count == 2
    assert result.new_gap_count == 2
    counts = services.detector.count_by_status(symbol_id=symbol.id)
    assert counts == {"PENDING": 2, "FILLING": 0, "FILLED": 0, "FAILED": 0}

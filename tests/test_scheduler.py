import asyncio

from conftest import update_rows
from kline_sync.models import Symbol
from kline_sync.services.config_service import SYNC_HISTORY_AUTO


def test_history_job_respects_switch(services):
    services.config.update_value(SYNC_HISTORY_AUTO, "false")
    assert services.scheduler.run_history_sync() is None


def test_jobs_run_with_nothing_configured(services):
    assert services.scheduler.run_history_sync().total_processed == 0
    assert services.scheduler.run_gap_detection().interval_count == 0
    assert services.scheduler.run_auto_fill().disabled


def test_start_runs_each_loop_and_stop_cancels(services, monkeypatch):
    calls = []
    scheduler = services.scheduler
    monkeypatch.setattr(scheduler, "run_history_sync", lambda: calls.append("history"))
    monkeypatch.setattr(scheduler, "run_gap_detection", lambda: calls.append("detect"))
    monkeypatch.setattr(scheduler, "run_auto_fill", lambda: calls.append("fill"))

    async def run():
        await scheduler.start()
        await asyncio.sleep(0.1)
        assert len(scheduler._tasks) == 3
        await scheduler.stop()

    asyncio.run(run())

    assert sorted(calls) == ["detect", "fill", "history"]
    assert scheduler.running is False
    assert scheduler._tasks == []
    assert services.shutdown.is_set()


def test_history_job_syncs_history_targets(services, symbol, exchange):
    summary = services.scheduler.run_history_sync()

    assert summary.total_processed == 2
    assert {call[1] for call in exchange.calls} == {"1m", "1h"}


def test_history_job_skips_symbols_with_history_disabled(services, session_factory, symbol, exchange):
    update_rows(session_factory, Symbol, symbol.id, history_sync_enabled=False)

    summary = services.scheduler.run_history_sync()

    assert summary.total_processed == 0
    assert exchange.calls == []

import pytest

from kline_sync.errors import NotFoundError, StateConflictError
from kline_sync.models import TaskStatus, TaskType


def test_task_lifecycle(services, symbol):
    sync = services.sync
    task = sync.create_history_task(symbol.id, "1h", 0, 1000)
    assert task.status == TaskStatus.PENDING.value

    sync.start_task(task.id)
    assert sync.get_task(task.id).status == TaskStatus.RUNNING.value
    sync.update_synced_count(task.id, 10)
    sync.complete_task(task.id, 42)

    done = sync.get_task(task.id)
    assert done.status == TaskStatus.SUCCESS.value
    assert done.synced_count == 42


def test_start_requires_pending(services, symbol):
    task = services.sync.create_task(symbol.id, "1m", TaskType.REALTIME)
    services.sync.start_task(task.id)
    with pytest.raises(StateConflictError):
        services.sync.start_task(task.id)


def test_retry_is_bounded(services, symbol):
    sync = services.sync
    task = sync.create_task(symbol.id, "1h", TaskType.GAP_FILL, 0, 1, max_retries=1)
    sync.fail_task(task.id, "boom")
    retried = sync.retry_task(task.id)
    assert retried.status == TaskStatus.PENDING.value
    assert retried.retry_count == 1
    sync.fail_task(task.id, "boom again")
    with pytest.raises(StateConflictError):
        sync.retry_task(task.id)


def test_unknown_task(services):
    with pytest.raises(NotFoundError):
        services.sync.get_task(12345)


def test_fail_stale_running_tasks(services, symbol):
    task = services.sync.create_history_task(symbol.id, "1h", 0, 1)
    services.sync.start_task(task.id)
    assert services.sync.fail_stale_running_tasks() == 1
    assert services.sync.running_tasks() == []
    assert services.sync.get_task(task.id).status == TaskStatus.FAILED.value


def test_status_created_lazily_with_auto_fill_on(services, symbol):
    assert services.sync.get_status(symbol.id, "1h") is None
    status = services.sync.get_or_create_status(symbol.id, "1h")
    assert status.auto_gap_fill_enabled is True
    assert status.last_kline_time_ms is None
    assert status.total_klines == 0


def test_update_status_keeps_max_watermark(services, symbol):
    sync = services.sync
    sync.update_status(symbol.id, "1h", 5000, 3)
    sync.update_status(symbol.id, "1h", 2000, 2)
    status = sync.get_status(symbol.id, "1h")
    assert status.last_kline_time_ms == 5000
    assert status.total_klines == 5
    assert status.last_sync_time is not None


def test_reset_status_disables_auto_fill(services, symbol):
    services.sync.update_status(symbol.id, "1h", 5000, 3)
    status = services.sync.reset_status(symbol.id, "1h", 1000, 1)
    assert status.last_kline_time_ms == 1000
    assert status.total_klines == 1
    assert status.auto_gap_fill_enabled is False

    enabled = services.sync.set_auto_gap_fill_by_id(status.id, True)
    assert enabled.auto_gap_fill_enabled is True

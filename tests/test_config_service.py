import pytest

from conftest import update_rows
from kline_sync.cache.ttl_cache import TTLCache
from kline_sync.errors import NotFoundError, ValidationError
from kline_sync.models import SystemConfig
from kline_sync.services.config_service import (
    DEFAULTS,
    SYNC_GAP_FILL_MAX_RETRY,
    SYNC_HISTORY_AUTO,
    SYNC_REALTIME_ENABLED,
    SystemConfigService,
    as_bool,
)


@pytest.fixture
def config(session_factory, test_settings):
    return SystemConfigService(session_factory, cache=TTLCache(), settings=test_settings)


def test_defaults_apply_without_rows(config):
    assert config.is_realtime_sync_enabled() is True
    assert config.is_history_auto_sync_enabled() is True
    assert config.is_auto_gap_fill_enabled() is False
    assert config.gap_fill_max_retry() == 3
    assert config.gap_fill_batch_size() == 10
    assert config.gap_fill_interval_ms() == 1000


def test_seed_defaults_is_idempotent(config):
    assert config.seed_defaults() == len(DEFAULTS)
    assert config.seed_defaults() == 0
    config.update_value(SYNC_HISTORY_AUTO, "false")
    assert config.seed_defaults() == 0
    assert config.is_history_auto_sync_enabled() is False


def test_reads_are_cached_until_invalidated(config, session_factory):
    config.seed_defaults()
    assert config.gap_fill_max_retry() == 3
    row = config.get_config(SYNC_GAP_FILL_MAX_RETRY)
    update_rows(session_factory, SystemConfig, row.id, config_value="7")

    assert config.gap_fill_max_retry() == 3
    config.refresh_cache(SYNC_GAP_FILL_MAX_RETRY)
    assert config.gap_fill_max_retry() == 7


def test_update_notifies_listener_only_on_change(config):
    seen = []
    config.add_listener(SYNC_REALTIME_ENABLED, lambda key, old, new: seen.append((old, new)))

    config.update_value(SYNC_REALTIME_ENABLED, "true")
    assert seen == []

    config.update_value(SYNC_REALTIME_ENABLED, "false")
    config.update_value(SYNC_REALTIME_ENABLED, "false")
    config.update_value(SYNC_REALTIME_ENABLED, "TRUE")
    assert seen == [("true", "false"), ("false", "TRUE")]
    assert config.is_realtime_sync_enabled() is True


def test_failing_listener_does_not_break_update(config):
    def broken(key, old, new):
        raise RuntimeError("listener crashed")

    config.add_listener(SYNC_REALTIME_ENABLED, broken)
    assert config.update_value(SYNC_REALTIME_ENABLED, "false") is True
    assert config.get_value(SYNC_REALTIME_ENABLED) == "false"


def test_invalid_integer_falls_back_to_default(config):
    config.update_value(SYNC_GAP_FILL_MAX_RETRY, "many")
    assert config.gap_fill_max_retry() == 3


def test_missing_key_and_empty_key(config):
    with pytest.raises(NotFoundError):
        config.get_config("sync.unknown")
    with pytest.raises(ValidationError):
        config.update_value("", "1")


@pytest.mark.parametrize("value, expected", [("true", True), (" True ", True), ("1", True), ("false", False), ("yes", False), (None, False)])
def test_as_bool(value, expected):
    assert as_bool(value) is expected

from datetime import timezone
from decimal import Decimal

import pytest

from kline_sync.errors import ValidationError
from kline_sync.utils.validators import (
    from_epoch_ms,
    normalize_timestamp,
    to_decimal,
    to_epoch_ms,
    truncate_to_minute,
    validate_time_range,
)


def test_timestamp_normalization_to_utc():
    ts = normalize_timestamp("2024-01-01T10:00:00+05:30")
    assert ts.tzinfo == timezone.utc
    assert ts.hour == 4


def test_decimal_keeps_printed_precision():
    assert to_decimal("0.1") == Decimal("0.1")
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal(float("nan")) is None
    assert to_decimal("abc", default=Decimal("0")) == Decimal("0")


def test_epoch_ms_conversions():
    assert to_epoch_ms(1704067200000) == 1704067200000
    assert to_epoch_ms("1704067200000") == 1704067200000
    assert to_epoch_ms("2024-01-01T00:00:00Z") == 1704067200000
    assert from_epoch_ms(1704067200000).year == 2024
    with pytest.raises(ValidationError):
        to_epoch_ms("not a time")


def test_truncate_to_minute():
    assert truncate_to_minute(1704067259999) == 1704067200000


def test_time_range_validation():
    validate_time_range(1, 1)
    with pytest.raises(ValidationError):
        validate_time_range(2, 1)
    with pytest.raises(ValidationError):
        validate_time_range(None, 1)

from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from kline_sync.errors import ValidationError
from kline_sync.utils.intervals import MINUTE_MS


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    try:
        # str() first so floats keep their printed precision
        casted = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return default
    if not casted.is_finite():
        return default
    return casted


def to_native_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def now_ms() -> int:
    return int(time.time() * 1000)


def truncate_to_minute(ms: int) -> int:
    return ms - (ms % MINUTE_MS)


def normalize_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        iso = str(value).replace("Z", "+00:00")
        dt = datetime.fromisoformat(iso)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_epoch_ms(value: Any) -> int:
    """Accept epoch milliseconds, a datetime or an ISO-8601 string."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    try:
        return int(normalize_timestamp(value).timestamp() * 1000)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid timestamp: {value!r}") from None


def from_epoch_ms(ms: int | None) -> datetime | None:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def validate_time_range(start_ms: int | None, end_ms: int | None) -> None:
    if start_ms is None:
        raise ValidationError("start time is required")
    if end_ms is None:
        raise ValidationError("end time is required")
    if start_ms > end_ms:
        raise ValidationError("start time must not be after end time")

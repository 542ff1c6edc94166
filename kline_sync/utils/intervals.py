from __future__ import annotations

from kline_sync.errors import ValidationError

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

# 1M is approximated as 30 days.
_INTERVAL_MS = {
    "1m": MINUTE_MS,
    "3m": 3 * MINUTE_MS,
    "5m": 5 * MINUTE_MS,
    "15m": 15 * MINUTE_MS,
    "30m": 30 * MINUTE_MS,
    "1h": HOUR_MS,
    "2h": 2 * HOUR_MS,
    "4h": 4 * HOUR_MS,
    "6h": 6 * HOUR_MS,
    "8h": 8 * HOUR_MS,
    "12h": 12 * HOUR_MS,
    "1d": DAY_MS,
    "3d": 3 * DAY_MS,
    "1w": 7 * DAY_MS,
    "1M": 30 * DAY_MS,
}

VALID_INTERVALS: tuple[str, ...] = tuple(_INTERVAL_MS)


def is_valid_interval(interval: str | None) -> bool:
    return interval in _INTERVAL_MS


def validate_interval(interval: str | None) -> str:
    if not interval:
        raise ValidationError("interval is required")
    if interval not in _INTERVAL_MS:
        raise ValidationError(
            f"Unsupported interval: {interval}. Supported: {', '.join(VALID_INTERVALS)}"
        )
    return interval


def interval_ms(interval: str) -> int:
    validate_interval(interval)
    return _INTERVAL_MS[interval]


def parse_intervals(raw: str | None) -> list[str]:
    """Parse a comma separated interval list, dropping unknown codes and duplicates."""
    if not raw or not raw.strip():
        return []
    result: list[str] = []
    for token in raw.split(","):
        code = token.strip()
        if code in _INTERVAL_MS and code not in result:
            result.append(code)
    return result

"""
Interval arithmetic shared by the sync engine.

All timestamps are UTC seconds since epoch.
"""

import time

# Maps Binance interval strings to their duration in seconds.
INTERVAL_SECONDS: dict[str, int] = {
    "1m": 60,
    "3m": 180,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "2h": 7200,
    "4h": 14400,
    "6h": 21600,
    "8h": 28800,
    "12h": 43200,
    "1d": 86400,
    "3d": 259200,
    "1w": 604800,
    "1M": 2592000,
}

DEFAULT_INTERVAL_SECONDS = 3600

# A series this many intervals behind is refetched from a fixed lookback
# instead of walking forward from its last candle.
STALE_AFTER_INTERVALS = 2
STALE_LOOKBACK_CANDLES = 100


def now_ts() -> int:
    return int(time.time())


def interval_to_seconds(interval: str) -> int:
    """Duration of *interval* in seconds, one hour for unknown strings."""
    return INTERVAL_SECONDS.get(interval, DEFAULT_INTERVAL_SECONDS)


def expected_candles(start: int, end: int, interval_seconds: int) -> int:
    """Number of candles an ``end - start`` range should hold."""
    if interval_seconds <= 0 or end <= start:
        return 0
    return (end - start) // interval_seconds


def recent_gap_threshold(
    interval_seconds: int,
    stale_fraction: float = 0.1,
    min_seconds: int = 300,
) -> int:
    """Age after which the newest candle counts as a recent gap.

    One interval plus a margin, floored at *min_seconds* so that short
    intervals are not flagged on every small delay.
    """
    return max(interval_seconds + int(interval_seconds * stale_fraction), min_seconds)


def compute_fetch_since(last_ts: int, now: int, interval_seconds: int) -> tuple[int, bool]:
    """
    Decide where an incremental fetch should start.

    Returns
    -------
    tuple[int, bool]
        ``(since, stale)``.  When the series is fresh ``since`` is the last
        known timestamp.  When it lags by ``STALE_AFTER_INTERVALS`` or more,
        ``since`` jumps to the last ``STALE_LOOKBACK_CANDLES`` candles and
        ``stale`` is True; the internal-gap pass fills whatever lies between.
    """
    if now - last_ts < STALE_AFTER_INTERVALS * interval_seconds:
        return last_ts, False
    return now - STALE_LOOKBACK_CANDLES * interval_seconds, True

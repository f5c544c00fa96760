"""
Ordered, merge-safe candle container for one series.

The store keeps candles sorted by open time with no duplicates.  Every
producer (live ticks, incremental fetches, backfill pages) goes through
``merge``, which decides per candle whether to append, refresh in place or
insert at the sorted position.  Malformed candles are skipped one at a time
so a single bad row never loses the rest of a page.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import pandas as pd

from candledesk.core.models import Candle, Gap, SeriesId

CANDLE_COLUMNS = ["ts", "open", "high", "low", "close", "volume"]

# Consecutive candles further apart than this many intervals form a gap.
GAP_TOLERANCE = 1.5


@dataclass
class MergeResult:
    appended: int = 0
    inserted: int = 0
    updated: int = 0
    rejected: int = 0

    @property
    def changed(self) -> bool:
        return (self.appended + self.inserted + self.updated) > 0

    @property
    def added(self) -> int:
        return self.appended + self.inserted

    def __iadd__(self, other: "MergeResult") -> "MergeResult":
        self.appended += other.appended
        self.inserted += other.inserted
        self.updated += other.updated
        self.rejected += other.rejected
        return self


class CandleStore:
    """
    Candles of one series, sorted by timestamp.

    Parameters
    ----------
    series_id : SeriesId
        Identity of the series (used for logging and persistence).
    candles : Iterable[Candle], optional
        Initial content, merged with the normal rules.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        series_id: SeriesId,
        candles: Optional[Iterable[Candle]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.series_id = series_id
        self.logger = logger or logging.getLogger(__name__)
        self._candles: list[Candle] = []
        self._timestamps: list[int] = []
        self.version = 0
        if candles:
            self.merge(candles)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def merge(self, candles: Iterable[Candle]) -> MergeResult:
        """
        Merge *candles* into the store.

        Same timestamp as an existing candle replaces it, a newer timestamp
        is appended, an older unseen timestamp is inserted in order.
        """
        result = MergeResult()
        for candle in candles:
            reason = candle.validation_error()
            if reason is not None:
                result.rejected += 1
                self.logger.warning(
                    f"[{self.series_id}] Rejected candle at ts={candle.ts}: {reason}"
                )
                continue
            self._merge_one(candle, result)

        if result.changed:
            self.version += 1
        return result

    def update_or_append(self, candle: Candle) -> MergeResult:
        """Apply one live tick (the still-forming candle or a new one)."""
        return self.merge([candle])

    def detect_gaps(self, interval_seconds: int) -> list[Gap]:
        """
        Return every hole between consecutive candles.

        A pair further apart than ``GAP_TOLERANCE`` intervals yields
        ``Gap(prev.ts, next.ts)``, oldest first.
        """
        threshold = interval_seconds * GAP_TOLERANCE
        ts = self._timestamps
        return [
            Gap(ts[i - 1], ts[i])
            for i in range(1, len(ts))
            if ts[i] - ts[i - 1] > threshold
        ]

    def min_timestamp(self) -> Optional[int]:
        return self._timestamps[0] if self._timestamps else None

    def max_timestamp(self) -> Optional[int]:
        return self._timestamps[-1] if self._timestamps else None

    def last_candle(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    @property
    def candles(self) -> tuple[Candle, ...]:
        return tuple(self._candles)

    def window(self, start: int, end: int) -> list[Candle]:
        """Candles with ``start <= ts <= end``."""
        lo = bisect.bisect_left(self._timestamps, start)
        hi = bisect.bisect_right(self._timestamps, end)
        return self._candles[lo:hi]

    def clear(self) -> None:
        if self._candles:
            self._candles.clear()
            self._timestamps.clear()
            self.version += 1

    def is_empty(self) -> bool:
        return not self._candles

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self):
        return iter(self._candles)

    # ------------------------------------------------------------------
    # DataFrame conversion
    # ------------------------------------------------------------------

    def to_frame(self) -> pd.DataFrame:
        """Return the candles as a DataFrame with ``CANDLE_COLUMNS``."""
        if not self._candles:
            return pd.DataFrame(columns=CANDLE_COLUMNS)
        return pd.DataFrame(
            [(c.ts, c.open, c.high, c.low, c.close, c.volume) for c in self._candles],
            columns=CANDLE_COLUMNS,
        )

    @classmethod
    def from_frame(
        cls,
        series_id: SeriesId,
        df: pd.DataFrame,
        logger: Optional[logging.Logger] = None,
    ) -> "CandleStore":
        store = cls(series_id, logger=logger)
        if df is None or df.empty:
            return store
        store.merge(
            Candle(
                ts=int(row.ts),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume),
            )
            for row in df[CANDLE_COLUMNS].itertuples(index=False)
        )
        return store

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _merge_one(self, candle: Candle, result: MergeResult) -> None:
        ts = self._timestamps
        if not ts or candle.ts > ts[-1]:
            ts.append(candle.ts)
            self._candles.append(candle)
            result.appended += 1
            return

        idx = bisect.bisect_left(ts, candle.ts)
        if ts[idx] == candle.ts:
            if self._candles[idx] != candle:
                self._candles[idx] = candle
                result.updated += 1
            return

        ts.insert(idx, candle.ts)
        self._candles.insert(idx, candle)
        result.inserted += 1

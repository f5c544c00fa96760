from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from candledesk.core.errors import InvalidSeriesIdError
from candledesk.helpers.time_helper import INTERVAL_SECONDS, interval_to_seconds


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Candle:
    ts: int          # UTC open time, seconds since epoch
    open: float
    high: float
    low: float
    close: float
    volume: float

    def validation_error(self) -> Optional[str]:
        """Return why this candle is malformed, or ``None`` when it is valid."""
        values = (self.open, self.high, self.low, self.close, self.volume)
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
            return "non-finite value"
        if self.ts < 0:
            return f"negative timestamp {self.ts}"
        if min(self.open, self.high, self.low, self.close) <= 0:
            return "non-positive price"
        if self.volume < 0:
            return f"negative volume {self.volume}"
        if self.high < max(self.open, self.close):
            return f"high {self.high} below max(open, close)"
        if self.low > min(self.open, self.close):
            return f"low {self.low} above min(open, close)"
        return None

    @property
    def is_valid(self) -> bool:
        return self.validation_error() is None


@dataclass(frozen=True, order=True)
class SeriesId:
    symbol: str      # exchange ticker, e.g. "BTCUSDT"
    interval: str    # kline interval string, e.g. "1h"

    @classmethod
    def parse(cls, name: str) -> "SeriesId":
        """Build a series id from a ``SYMBOL_interval`` name, e.g. ``BTCUSDT_1h``."""
        symbol, sep, interval = name.strip().rpartition("_")
        # "1M" (month) is the only interval where case matters.
        if interval != "1M":
            interval = interval.lower()
        if not sep or not symbol or interval not in INTERVAL_SECONDS:
            raise InvalidSeriesIdError(f"Invalid series name: {name!r}")
        return cls(symbol=symbol.upper(), interval=interval)

    @property
    def name(self) -> str:
        return f"{self.symbol}_{self.interval}"

    @property
    def interval_seconds(self) -> int:
        return interval_to_seconds(self.interval)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Gap:
    start: int   # exclusive
    end: int     # inclusive

    @property
    def seconds(self) -> int:
        return self.end - self.start


@dataclass
class DownloadProgress:
    """Backfill state for one series, owned by its download coordinator."""
    series_id: SeriesId
    pending_gaps: list[Gap] = field(default_factory=list)
    current_range_start: Optional[int] = None
    current_range_end: Optional[int] = None
    candles_fetched: int = 0
    range_candles_fetched: int = 0
    estimated_total: int = 0
    batches: int = 0
    paused: bool = False

    @property
    def gaps_remaining(self) -> int:
        current = 1 if self.current_range_start is not None else 0
        return len(self.pending_gaps) + current

    @property
    def percent(self) -> float:
        if self.estimated_total <= 0:
            return 100.0
        return min(100.0, 100.0 * self.candles_fetched / self.estimated_total)


# ---------------------------------------------------------------------------
# Trading
# ---------------------------------------------------------------------------

class TradeSide(Enum):
    BUY = "buy"     # long
    SELL = "sell"   # short

    @property
    def opposite(self) -> "TradeSide":
        return TradeSide.SELL if self is TradeSide.BUY else TradeSide.BUY


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"


@dataclass
class Position:
    symbol: str
    side: TradeSide
    quantity: float
    entry_price: float
    open_timestamp: int
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None

    def unrealized_pnl(self, price: float) -> float:
        if self.side is TradeSide.BUY:
            return (price - self.entry_price) * self.quantity
        return (self.entry_price - price) * self.quantity

    def margin_used(self) -> float:
        return self.entry_price * self.quantity


@dataclass
class PendingOrder:
    id: int
    symbol: str
    side: TradeSide
    quantity: float
    limit_price: float
    created_timestamp: int
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    strategy_id: Optional[str] = None
    strategy_name: Optional[str] = None

    def is_triggered(self, price: float) -> bool:
        if self.side is TradeSide.BUY:
            return price <= self.limit_price
        return price >= self.limit_price


@dataclass(frozen=True)
class Trade:
    id: int
    symbol: str
    side: TradeSide
    quantity: float
    price: float
    total_amount: float
    realized_pnl: float
    timestamp: int
    strategy_id: Optional[str] = None
    strategy_name: Optional[str] = None

from abc import ABC, abstractmethod
from typing import List, Optional

from candledesk.core.models import Candle, SeriesId

# Default candles per backward page; Binance caps klines at 1000.
DEFAULT_PAGE_SIZE = 1000


class MarketDataProvider(ABC):
    """
    Source of historical and live candles.

    All timestamps are UTC seconds.  Every method raises a
    ``candledesk.core.errors.ProviderError`` subclass on failure and must
    enforce its own network timeout.
    """

    name: str = "provider"
    page_size: int = DEFAULT_PAGE_SIZE

    @abstractmethod
    def fetch_latest_candle(self, series_id: SeriesId) -> Optional[Candle]:
        """The current (possibly still forming) candle, or ``None``."""

    @abstractmethod
    def fetch_candles_since(self, series_id: SeriesId, since_ts: int) -> List[Candle]:
        """Up to one page of candles with ``ts >= since_ts``, oldest first."""

    @abstractmethod
    def fetch_candles_backward(self, series_id: SeriesId, lower_ts: int, upper_ts_exclusive: int) -> List[Candle]:
        """
        Up to ``page_size`` of the most recent candles with
        ``ts < upper_ts_exclusive``, oldest first.  *lower_ts* is a hint
        only; callers filter the page themselves.
        """

    @abstractmethod
    def fetch_candles_in_range(self, series_id: SeriesId, start_ts: int, end_ts: int) -> List[Candle]:
        """Every candle with ``start_ts <= ts <= end_ts``, paging internally."""

    @abstractmethod
    def check_earliest_available_timestamp(self, series_id: SeriesId) -> Optional[int]:
        """Open time of the oldest candle the provider has, or ``None``."""

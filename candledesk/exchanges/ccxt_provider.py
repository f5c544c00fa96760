"""
Market data from any ccxt exchange through ``fetch_ohlcv``.

Series symbols use the exchange's raw market id (``BTCUSDT``); they are
mapped to the ccxt unified symbol (``BTC/USDT``) after markets load.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

import ccxt

from candledesk.core.errors import (
    ApiError,
    ConfigurationError,
    InvalidSeriesIdError,
    NetworkError,
    ParseError,
    ProviderError,
    ValidationError,
)
from candledesk.core.models import Candle, SeriesId
from candledesk.exchanges.base import DEFAULT_PAGE_SIZE, MarketDataProvider

_REQUEST_TIMEOUT_MS = 10_000
_MAX_RANGE_PAGES = 1000


class CcxtMarketDataProvider(MarketDataProvider):
    """
    Parameters
    ----------
    exchange_id : str
        ccxt exchange id, e.g. ``"binance"``, ``"bybit"``, ``"hyperliquid"``.
    venue_type : str
        ``"spot"`` or ``"futures"``.
    page_size : int
        Candles per ``fetch_ohlcv`` call.
    exchange : ccxt.Exchange, optional
        Pre-built exchange instance (useful for testing).
    """

    def __init__(
        self,
        exchange_id: str = "binance",
        venue_type: str = "spot",
        page_size: int = DEFAULT_PAGE_SIZE,
        exchange=None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.name = exchange_id
        self.page_size = page_size
        if exchange is None:
            exchange_cls = getattr(ccxt, exchange_id, None)
            if exchange_cls is None:
                raise ConfigurationError(f"Unknown ccxt exchange: {exchange_id!r}")
            exchange = exchange_cls({
                "enableRateLimit": True,
                "timeout": _REQUEST_TIMEOUT_MS,
            })
        if venue_type == "futures":
            exchange.options["defaultType"] = "future"
        elif venue_type == "spot":
            exchange.options["defaultType"] = "spot"
        self.exchange = exchange
        self._markets_loaded = False

    # ------------------------------------------------------------------
    # MarketDataProvider
    # ------------------------------------------------------------------

    def fetch_latest_candle(self, series_id: SeriesId) -> Optional[Candle]:
        # Two rows so the forming candle is the last one on every exchange.
        candles = self._fetch_ohlcv(series_id, since_ts=None, limit=2)
        return candles[-1] if candles else None

    def fetch_candles_since(self, series_id: SeriesId, since_ts: int) -> List[Candle]:
        return self._fetch_ohlcv(series_id, since_ts=since_ts, limit=self.page_size)

    def fetch_candles_backward(self, series_id: SeriesId, lower_ts: int, upper_ts_exclusive: int) -> List[Candle]:
        # ccxt has no portable end bound: start one page before the end.
        since = max(0, upper_ts_exclusive - self.page_size * series_id.interval_seconds)
        candles = self._fetch_ohlcv(series_id, since_ts=since, limit=self.page_size)
        return [c for c in candles if c.ts < upper_ts_exclusive]

    def fetch_candles_in_range(self, series_id: SeriesId, start_ts: int, end_ts: int) -> List[Candle]:
        out: List[Candle] = []
        cursor = start_ts
        for _ in range(_MAX_RANGE_PAGES):
            if cursor > end_ts:
                break
            page = self._fetch_ohlcv(series_id, since_ts=cursor, limit=self.page_size)
            if not page:
                break
            out.extend(c for c in page if start_ts <= c.ts <= end_ts)
            last_ts = page[-1].ts
            if len(page) < self.page_size or last_ts >= end_ts or last_ts < cursor:
                break
            cursor = last_ts + 1
        return out

    def check_earliest_available_timestamp(self, series_id: SeriesId) -> Optional[int]:
        candles = self._fetch_ohlcv(series_id, since_ts=0, limit=1)
        return candles[0].ts if candles else None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_markets(self) -> None:
        """Lazily load exchange market metadata (public endpoint)."""
        if not self._markets_loaded:
            self._call(self.exchange.load_markets)
            self._markets_loaded = True

    def _to_ccxt_symbol(self, series_id: SeriesId) -> str:
        self._ensure_markets()
        market = self._call(self.exchange.market, series_id.symbol)
        return market["symbol"]

    def _fetch_ohlcv(self, series_id: SeriesId, since_ts: Optional[int], limit: int) -> List[Candle]:
        symbol = self._to_ccxt_symbol(series_id)
        since_ms = since_ts * 1000 if since_ts is not None else None
        rows = self._call(
            self.exchange.fetch_ohlcv, symbol, series_id.interval, since=since_ms, limit=limit,
        )
        return [ohlcv_to_candle(row) for row in rows or []]

    def _call(self, fn: Callable, *args, **kwargs):
        """Run a ccxt call, translating its exceptions to ``ProviderError``."""
        try:
            return fn(*args, **kwargs)
        except ccxt.AuthenticationError as exc:
            raise ApiError(str(exc), status=401) from exc
        except ccxt.BadSymbol as exc:
            raise InvalidSeriesIdError(str(exc)) from exc
        except ccxt.BadRequest as exc:
            raise ValidationError(str(exc)) from exc
        except ccxt.RateLimitExceeded as exc:
            raise ApiError(str(exc), status=429) from exc
        except ccxt.NetworkError as exc:
            raise NetworkError(str(exc)) from exc
        except ccxt.ExchangeError as exc:
            raise ApiError(str(exc)) from exc
        except ccxt.BaseError as exc:
            raise ProviderError(str(exc)) from exc


def ohlcv_to_candle(row: list) -> Candle:
    """Convert a ccxt ``[ms, o, h, l, c, v]`` row to a ``Candle``."""
    try:
        return Candle(
            ts=int(row[0]) // 1000,
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5] or 0.0),
        )
    except (IndexError, TypeError, ValueError) as exc:
        raise ParseError(f"Malformed OHLCV row {row!r}: {exc}") from exc

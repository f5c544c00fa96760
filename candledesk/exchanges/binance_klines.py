"""
Binance spot REST klines provider.

    GET https://api.binance.com/api/v3/klines
        ?symbol=BTCUSDT&interval=1h&startTime=...&endTime=...&limit=1000

Each kline is an array ``[open_time_ms, "open", "high", "low", "close",
"volume", close_time_ms, ...]``.  Open times are converted to seconds.
``requests`` exceptions and non-2xx responses are translated into the
``ProviderError`` family here, at the boundary.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import requests

from candledesk.core.errors import (
    ApiError,
    InvalidSeriesIdError,
    NetworkError,
    ParseError,
    ProviderError,
)
from candledesk.core.models import Candle, SeriesId
from candledesk.exchanges.base import DEFAULT_PAGE_SIZE, MarketDataProvider

_BASE_URL = "https://api.binance.com"
_KLINES_ENDPOINT = "/api/v3/klines"
_PING_ENDPOINT = "/api/v3/ping"

_MAX_LIMIT = 1000
_REQUEST_TIMEOUT = 10

# Binance error code for an unknown symbol.
_INVALID_SYMBOL_CODE = -1121

# Upper bound on pages walked by a single range fetch.
_MAX_RANGE_PAGES = 1000


class BinanceKlinesProvider(MarketDataProvider):
    """
    Fetches candles from the Binance spot REST API.

    Parameters
    ----------
    base_url : str
        Override the default base URL (useful for testing).
    page_size : int
        Candles per request, capped at 1000.
    timeout : float
        Per-request timeout in seconds.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    name = "binance"

    def __init__(
        self,
        base_url: str = _BASE_URL,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float = _REQUEST_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.page_size = max(1, min(page_size, _MAX_LIMIT))
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # MarketDataProvider
    # ------------------------------------------------------------------

    def fetch_latest_candle(self, series_id: SeriesId) -> Optional[Candle]:
        candles = self._fetch_klines(series_id, limit=1)
        return candles[-1] if candles else None

    def fetch_candles_since(self, series_id: SeriesId, since_ts: int) -> List[Candle]:
        return self._fetch_klines(series_id, start_ts=since_ts, limit=self.page_size)

    def fetch_candles_backward(self, series_id: SeriesId, lower_ts: int, upper_ts_exclusive: int) -> List[Candle]:
        # endTime is inclusive on Binance, in milliseconds.
        return self._fetch_klines(
            series_id,
            end_ms=upper_ts_exclusive * 1000 - 1,
            limit=self.page_size,
        )

    def fetch_candles_in_range(self, series_id: SeriesId, start_ts: int, end_ts: int) -> List[Candle]:
        """Walk forward page by page from *start_ts* until *end_ts* is reached."""
        out: List[Candle] = []
        cursor = start_ts
        for _ in range(_MAX_RANGE_PAGES):
            if cursor > end_ts:
                break
            page = self._fetch_klines(
                series_id, start_ts=cursor, end_ms=end_ts * 1000, limit=self.page_size,
            )
            if not page:
                break
            out.extend(c for c in page if start_ts <= c.ts <= end_ts)
            last_ts = page[-1].ts
            if len(page) < self.page_size or last_ts >= end_ts or last_ts < cursor:
                break
            cursor = last_ts + 1
        return out

    def check_earliest_available_timestamp(self, series_id: SeriesId) -> Optional[int]:
        candles = self._fetch_klines(series_id, start_ts=0, limit=1)
        return candles[0].ts if candles else None

    def ping(self) -> bool:
        """Return True when the REST API answers."""
        try:
            self._get(_PING_ENDPOINT, {})
        except ProviderError as exc:
            self.logger.warning(f"Binance ping failed: {exc}")
            return False
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fetch_klines(
        self,
        series_id: SeriesId,
        start_ts: Optional[int] = None,
        end_ms: Optional[int] = None,
        limit: int = _MAX_LIMIT,
    ) -> List[Candle]:
        params: dict[str, Any] = {
            "symbol": series_id.symbol,
            "interval": series_id.interval,
            "limit": limit,
        }
        if start_ts is not None:
            params["startTime"] = start_ts * 1000
        if end_ms is not None:
            params["endTime"] = end_ms

        raw = self._get(_KLINES_ENDPOINT, params)
        if not isinstance(raw, list):
            raise ParseError(f"[{series_id}] Expected a kline array, got {type(raw).__name__}")
        candles = [parse_kline(row) for row in raw]
        self.logger.debug(f"[{series_id}] {len(candles)} klines fetched ({params}).")
        return candles

    def _get(self, endpoint: str, params: dict) -> Any:
        try:
            response = requests.get(
                self._base_url + endpoint,
                params=params,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise NetworkError(f"Request to {endpoint} timed out: {exc}") from exc
        except requests.ConnectionError as exc:
            raise NetworkError(f"Connection to {endpoint} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"Request to {endpoint} failed: {exc}") from exc

        if not response.ok:
            code, message = _error_body(response)
            if code == _INVALID_SYMBOL_CODE:
                raise InvalidSeriesIdError(message)
            raise ApiError(message, status=response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(f"Invalid JSON from {endpoint}: {exc}") from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_kline(row: list) -> Candle:
    """Convert one Binance kline array to a ``Candle`` (ts in seconds)."""
    try:
        return Candle(
            ts=int(row[0]) // 1000,
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )
    except (IndexError, TypeError, ValueError) as exc:
        raise ParseError(f"Malformed kline {row!r}: {exc}") from exc


def _error_body(response) -> tuple[Optional[int], str]:
    """Extract Binance's ``{"code": ..., "msg": ...}`` error body if present."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return body.get("code"), str(body.get("msg", body))
    return None, str(body)

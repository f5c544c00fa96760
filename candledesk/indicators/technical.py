"""
Technical indicators over candle DataFrames.

Functions take a close-price ``pd.Series`` and return a series aligned to
it.  ``IndicatorCache`` keeps one computed frame per series and recomputes
it only when the store's ``version`` moved.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import pandas as pd

from candledesk.core.models import SeriesId
from candledesk.data.candle_store import CandleStore

DEFAULT_PARAMS = {
    "sma_period": 20,
    "ema_fast": 12,
    "ema_slow": 26,
    "macd_signal": 9,
    "rsi_period": 14,
}


# ---------------------------------------------------------------------------
# Indicator functions
# ---------------------------------------------------------------------------

def sma(close: pd.Series, period: int) -> pd.Series:
    return close.rolling(window=period, min_periods=period).mean()


def ema(close: pd.Series, period: int) -> pd.Series:
    return close.ewm(span=period, adjust=False, min_periods=period).mean()


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """Wilder's RSI; 100 when there were no losses over the window."""
    delta = close.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    rs = avg_gain / avg_loss.replace(0.0, np.nan)
    out = 100.0 - 100.0 / (1.0 + rs)
    return out.where(avg_loss != 0.0, 100.0).where(avg_gain.notna())


def macd(close: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> pd.DataFrame:
    line = ema(close, fast) - ema(close, slow)
    signal_line = line.ewm(span=signal, adjust=False, min_periods=signal).mean()
    return pd.DataFrame({
        "macd": line,
        "macd_signal": signal_line,
        "macd_hist": line - signal_line,
    })


def compute_indicators(df: pd.DataFrame, params: Optional[dict] = None) -> pd.DataFrame:
    """Return *df* with sma, ema_fast, ema_slow, macd* and rsi columns appended."""
    p = {**DEFAULT_PARAMS, **(params or {})}
    out = df.copy()
    close = out["close"].astype(float)
    out["sma"] = sma(close, p["sma_period"])
    out["ema_fast"] = ema(close, p["ema_fast"])
    out["ema_slow"] = ema(close, p["ema_slow"])
    out = pd.concat([out, macd(close, p["ema_fast"], p["ema_slow"], p["macd_signal"])], axis=1)
    out["rsi"] = rsi(close, p["rsi_period"])
    return out


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class IndicatorCache:
    """Per-series indicator frames, invalidated by ``CandleStore.version``."""

    def __init__(self, params: Optional[dict] = None, logger: Optional[logging.Logger] = None) -> None:
        self.params = {**DEFAULT_PARAMS, **(params or {})}
        self.logger = logger or logging.getLogger(__name__)
        self._frames: dict[SeriesId, pd.DataFrame] = {}
        self._versions: dict[SeriesId, int] = {}

    def recompute(self, store: CandleStore) -> pd.DataFrame:
        """Recompute *store*'s indicators if it changed since the last call."""
        sid = store.series_id
        if self._versions.get(sid) == store.version and sid in self._frames:
            return self._frames[sid]
        frame = compute_indicators(store.to_frame(), self.params)
        self._frames[sid] = frame
        self._versions[sid] = store.version
        self.logger.debug(f"[{sid}] Indicators recomputed over {len(frame)} candles.")
        return frame

    def get(self, series_id: SeriesId) -> Optional[pd.DataFrame]:
        return self._frames.get(series_id)

    def invalidate(self, series_id: SeriesId) -> None:
        self._frames.pop(series_id, None)
        self._versions.pop(series_id, None)

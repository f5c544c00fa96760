"""
Local candle persistence.

One Parquet file per series under ``<data_dir>/<provider>/``::

    data/candles/binance/BTCUSDT_1h.parquet

Files are rewritten whole after every merge that changed the series.
Writes go to a temporary file first and then replace the target.

Usage::

    from candledesk.data.storage import SeriesStorage

    storage = SeriesStorage(data_dir="data/candles", provider="binance", logger=logger)
    store = storage.read_series(SeriesId.parse("BTCUSDT_1h"))
    storage.write_series(store)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from candledesk.core.errors import InvalidSeriesIdError
from candledesk.core.models import SeriesId
from candledesk.data.candle_store import CANDLE_COLUMNS, CandleStore

NUMERIC_COLUMNS = ["open", "high", "low", "close", "volume"]


class SeriesStorage:
    """
    Reads and writes whole-series Parquet files.

    Parameters
    ----------
    data_dir : str | Path
        Root directory for series files.
    provider : str
        Provider name, used as a sub-directory so series from different
        sources never overwrite each other.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        data_dir: str | Path,
        provider: str = "binance",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.data_dir = Path(data_dir) / provider
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Read / Write
    # ------------------------------------------------------------------

    def series_path(self, series_id: SeriesId) -> Path:
        return self.data_dir / f"{series_id.name}.parquet"

    def list_series(self) -> list[SeriesId]:
        """Series with a file on disk; unparseable file names are skipped."""
        found = []
        for path in sorted(self.data_dir.glob("*.parquet")):
            try:
                found.append(SeriesId.parse(path.stem))
            except InvalidSeriesIdError as exc:
                self.logger.warning(f"Skipping {path.name}: {exc}")
        return found

    def read_series(self, series_id: SeriesId) -> CandleStore:
        """
        Load *series_id* into a new ``CandleStore``.

        A missing file gives an empty store.  Malformed rows are rejected
        (and logged) by the store's merge.
        """
        path = self.series_path(series_id)
        if not path.exists():
            return CandleStore(series_id, logger=self.logger)
        df = pd.read_parquet(path)
        store = CandleStore.from_frame(series_id, self._normalize(df), logger=self.logger)
        self.logger.debug(f"[{series_id}] Loaded {len(store)} candles from {path.name}.")
        return store

    def write_series(self, store: CandleStore) -> Path:
        """Persist the whole series and return the file path."""
        path = self.series_path(store.series_id)
        df = store.to_frame()
        df["ts"] = df["ts"].astype("int64")
        df[NUMERIC_COLUMNS] = df[NUMERIC_COLUMNS].astype(float)
        tmp = path.with_suffix(".tmp")
        df.to_parquet(tmp, index=False)
        tmp.replace(path)
        self.logger.debug(f"[{store.series_id}] Saved {len(df)} candles.")
        return path

    def delete_series(self, series_id: SeriesId) -> bool:
        path = self.series_path(series_id)
        if path.exists():
            path.unlink()
            return True
        return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize(df: pd.DataFrame) -> pd.DataFrame:
        """Ensure consistent dtypes, sort order and no duplicate rows."""
        df = df.copy()
        missing = [c for c in CANDLE_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"Series file is missing columns: {missing}")
        df = df[CANDLE_COLUMNS]
        df["ts"] = pd.to_numeric(df["ts"], errors="coerce")
        df[NUMERIC_COLUMNS] = df[NUMERIC_COLUMNS].apply(pd.to_numeric, errors="coerce")
        df = df.dropna(subset=["ts"])
        df["ts"] = df["ts"].astype("int64")
        df = df.sort_values("ts").drop_duplicates(subset="ts", keep="last")
        return df.reset_index(drop=True)

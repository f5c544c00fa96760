"""Tests for SeriesStorage

Tests cover:
- Write / read round trip through Parquet
- Missing files and directory layout
- Normalization of unsorted, duplicated rows
- Listing and deleting series
"""

import pandas as pd
import pytest

from candledesk.core.models import SeriesId
from candledesk.data.candle_store import CandleStore
from candledesk.data.storage import SeriesStorage
from candledesk.tests.fakes import HOUR, T0, make_candles

SID = SeriesId("BTCUSDT", "1h")


@pytest.fixture
def storage(tmp_path):
    return SeriesStorage(tmp_path, provider="binance")


class TestReadWrite:
    """Test persistence of whole series."""

    def test_write_then_read(self, storage, tmp_path):
        store = CandleStore(SID, make_candles(T0, 10))

        path = storage.write_series(store)
        loaded = storage.read_series(SID)

        assert path == tmp_path / "binance" / "BTCUSDT_1h.parquet"
        assert not path.with_suffix(".tmp").exists()
        assert loaded.candles == store.candles

    def test_missing_file_gives_empty_store(self, storage):
        store = storage.read_series(SID)
        assert store.is_empty()
        assert store.series_id == SID

    def test_rewrite_replaces_content(self, storage):
        store = CandleStore(SID, make_candles(T0, 3))
        storage.write_series(store)
        store.merge(make_candles(T0 + 3 * HOUR, 2, base=200.0))

        storage.write_series(store)

        assert len(storage.read_series(SID)) == 5

    def test_unsorted_duplicate_rows_are_normalized(self, storage):
        df = pd.DataFrame({
            "ts": [T0 + HOUR, T0, T0 + HOUR],
            "open": [1.0, 1.0, 2.0],
            "high": [2.0, 2.0, 3.0],
            "low": [0.5, 0.5, 1.5],
            "close": [1.5, 1.5, 2.5],
            "volume": [10.0, 10.0, 20.0],
            "extra": ["x", "y", "z"],
        })
        df.to_parquet(storage.series_path(SID), index=False)

        store = storage.read_series(SID)

        assert [c.ts for c in store.candles] == [T0, T0 + HOUR]
        assert store.last_candle().close == pytest.approx(2.5)

    def test_malformed_rows_are_skipped(self, storage):
        df = pd.DataFrame({
            "ts": [T0, T0 + HOUR],
            "open": [1.0, -1.0],
            "high": [2.0, 2.0],
            "low": [0.5, 0.5],
            "close": [1.5, 1.5],
            "volume": [10.0, 10.0],
        })
        df.to_parquet(storage.series_path(SID), index=False)

        assert len(storage.read_series(SID)) == 1

    def test_file_missing_columns_raises(self, storage):
        pd.DataFrame({"ts": [T0], "close": [1.0]}).to_parquet(storage.series_path(SID), index=False)
        with pytest.raises(ValueError):
            storage.read_series(SID)


class TestListAndDelete:
    """Test directory-level operations."""

    def test_list_series_skips_bad_names(self, storage):
        storage.write_series(CandleStore(SID, make_candles(T0, 2)))
        storage.write_series(CandleStore(SeriesId("ETHUSDT", "4h"), make_candles(T0, 2, interval=4 * HOUR)))
        (storage.data_dir / "notes.parquet").write_bytes(b"")

        assert storage.list_series() == [SID, SeriesId("ETHUSDT", "4h")]

    def test_providers_do_not_share_files(self, tmp_path):
        SeriesStorage(tmp_path, provider="binance").write_series(CandleStore(SID, make_candles(T0, 2)))
        assert SeriesStorage(tmp_path, provider="ccxt").read_series(SID).is_empty()

    def test_delete(self, storage):
        storage.write_series(CandleStore(SID, make_candles(T0, 2)))
        assert storage.delete_series(SID)
        assert not storage.delete_series(SID)
        assert storage.list_series() == []

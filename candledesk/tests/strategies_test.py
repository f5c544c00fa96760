"""Tests for the built-in strategies and StrategyManager."""

import json

import pytest

from candledesk.core.errors import ValidationError
from candledesk.core.models import SeriesId, TradeSide
from candledesk.data.candle_store import CandleStore
from candledesk.strategies.base import MarketContext, TradingMode
from candledesk.strategies.ma_crossover import MovingAverageCrossoverStrategy
from candledesk.strategies.manager import StrategyManager, StrategyStatus
from candledesk.strategies.rsi import RSIStrategy
from candledesk.tests.fakes import HOUR, T0, make_candle

SID = SeriesId("BTCUSDT", "1h")


def context_from_closes(closes, series_id=SID):
    store = CandleStore(series_id, [make_candle(T0 + i * HOUR, close=c) for i, c in enumerate(closes)])
    return MarketContext(
        symbol=series_id.symbol,
        series_id=series_id,
        candles=store.to_frame(),
        current_price=float(closes[-1]),
    )


FALLING = [200.0 - i for i in range(20)]
RISING = [100.0 + i for i in range(20)]


class TestRSIStrategy:
    """Test RSI thresholds."""

    def test_oversold_buys_with_brackets(self):
        result = RSIStrategy().evaluate(context_from_closes(FALLING))

        signal = result.signal
        assert signal.side is TradeSide.BUY
        assert signal.quantity == pytest.approx(0.001)
        assert signal.take_profit == pytest.approx(FALLING[-1] * 1.05)
        assert signal.stop_loss == pytest.approx(FALLING[-1] * 0.95)
        assert result.confidence == pytest.approx(1.0)

    def test_overbought_sells(self):
        result = RSIStrategy().evaluate(context_from_closes(RISING))

        assert result.signal.side is TradeSide.SELL
        assert result.signal.take_profit == pytest.approx(RISING[-1] * 0.95)
        assert result.signal.stop_loss == pytest.approx(RISING[-1] * 1.05)

    def test_not_enough_candles_holds(self):
        result = RSIStrategy(rsi_period=14).evaluate(context_from_closes(FALLING[:14]))
        assert result.signal.is_hold
        assert "Not enough" in result.reason

    def test_neutral_holds(self):
        closes = [100.0 + (1 if i % 2 else -1) for i in range(30)]
        assert RSIStrategy().evaluate(context_from_closes(closes)).signal.is_hold

    def test_parameter_ranges(self):
        strategy = RSIStrategy()
        strategy.update_parameter("rsi_period", 21)
        assert strategy.rsi_period == 21
        with pytest.raises(ValidationError):
            strategy.update_parameter("rsi_period", 4)
        with pytest.raises(ValidationError):
            strategy.update_parameter("overbought_threshold", 95)
        with pytest.raises(ValidationError):
            strategy.update_parameter("nope", 1)

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            RSIStrategy(oversold_threshold=70, overbought_threshold=30)


class TestMovingAverageCrossover:
    """Test crossover detection."""

    def test_golden_cross_buys(self):
        strategy = MovingAverageCrossoverStrategy(fast_period=2, slow_period=5)

        result = strategy.evaluate(context_from_closes([10.0] * 6 + [20.0]))

        assert result.signal.side is TradeSide.BUY
        assert result.signal.take_profit == pytest.approx(22.0)
        assert result.signal.stop_loss == pytest.approx(19.0)
        assert result.confidence == pytest.approx(0.7)

    def test_death_cross_sells(self):
        strategy = MovingAverageCrossoverStrategy(fast_period=2, slow_period=5)

        result = strategy.evaluate(context_from_closes([10.0] * 6 + [5.0]))

        assert result.signal.side is TradeSide.SELL
        assert result.signal.take_profit == pytest.approx(4.5)
        assert result.signal.stop_loss == pytest.approx(5.25)

    def test_no_cross_holds(self):
        strategy = MovingAverageCrossoverStrategy(fast_period=2, slow_period=5)
        assert strategy.evaluate(context_from_closes([10.0] * 7)).signal.is_hold

    def test_needs_slow_plus_one_candles(self):
        strategy = MovingAverageCrossoverStrategy(fast_period=2, slow_period=5)
        assert "Not enough" in strategy.evaluate(context_from_closes([10.0] * 5)).reason

    def test_fast_must_stay_below_slow(self):
        with pytest.raises(ValidationError):
            MovingAverageCrossoverStrategy(fast_period=30, slow_period=10)
        strategy = MovingAverageCrossoverStrategy(fast_period=10, slow_period=30)
        with pytest.raises(ValidationError):
            strategy.update_parameter("fast_period", 40)


class TestStrategyManager:
    """Test registration, filtering and persistence."""

    def test_ids_are_sequential(self):
        manager = StrategyManager()
        assert manager.register(RSIStrategy()) == "strategy_1"
        assert manager.register(RSIStrategy()) == "strategy_2"
        assert len(manager) == 2

    def test_only_enabled_active_strategies_on_allowed_interval_run(self):
        manager = StrategyManager()
        enabled = manager.register(RSIStrategy(), enabled=True)
        manager.register(RSIStrategy(), enabled=False)
        wrong_tf = manager.register(RSIStrategy(), enabled=True, allowed_timeframes=["4h"])
        paused = manager.register(RSIStrategy(), enabled=True)
        manager.set_status(paused, StrategyStatus.PAUSED)

        results = manager.evaluate_all(context_from_closes(FALLING))

        assert [reg.id for reg, _ in results] == [enabled]
        manager.set_timeframes(wrong_tf, ["1h", "4h"])
        assert len(manager.evaluate_all(context_from_closes(FALLING))) == 2

    def test_trading_mode_blocks_signal(self):
        manager = StrategyManager()
        sid = manager.register(RSIStrategy(), enabled=True, trading_mode=TradingMode.SELL_ONLY)

        [(reg, result)] = manager.evaluate_all(context_from_closes(FALLING))

        assert reg.id == sid
        assert result.signal.is_hold
        assert "blocked" in result.reason

    def test_unknown_id_raises(self):
        with pytest.raises(ValidationError):
            StrategyManager().enable("strategy_9")

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "strategies.json"
        manager = StrategyManager()
        rsi_id = manager.register(RSIStrategy(rsi_period=21), enabled=True, allowed_timeframes=["1h"])
        ma_id = manager.register(MovingAverageCrossoverStrategy(5, 20), trading_mode=TradingMode.BUY_ONLY)
        manager.set_status(ma_id, StrategyStatus.PAUSED)

        manager.save(path)
        loaded = StrategyManager.load(path)

        assert [reg.id for reg in loaded.all()] == [rsi_id, ma_id]
        rsi_reg = loaded.get(rsi_id)
        assert isinstance(rsi_reg.strategy, RSIStrategy)
        assert rsi_reg.strategy.rsi_period == 21
        assert rsi_reg.enabled
        assert rsi_reg.allowed_timeframes == ["1h"]
        ma_reg = loaded.get(ma_id)
        assert ma_reg.strategy.slow_period == 20
        assert ma_reg.status is StrategyStatus.PAUSED
        assert ma_reg.trading_mode is TradingMode.BUY_ONLY
        assert loaded.register(RSIStrategy()) == "strategy_3"

    def test_load_skips_bad_entries_and_keeps_ids_unique(self, tmp_path):
        path = tmp_path / "strategies.json"
        path.write_text(json.dumps({
            "next_id": 1,
            "strategies": [
                {"id": "strategy_7", "strategy_type": "rsi", "parameters": {"rsi_period": 10}},
                {"id": "strategy_8", "strategy_type": "martingale", "parameters": {}},
                {"id": "strategy_9", "strategy_type": "rsi", "parameters": {"bogus": 1}},
            ],
        }))

        loaded = StrategyManager.load(path)

        assert [reg.id for reg in loaded.all()] == ["strategy_7"]
        assert loaded.register(RSIStrategy()) == "strategy_8"

    def test_load_missing_file(self, tmp_path):
        assert len(StrategyManager.load(tmp_path / "missing.json")) == 0

    @pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
    def test_load_unreadable_file_starts_empty(self, tmp_path, content):
        path = tmp_path / "strategies.json"
        path.write_text(content)

        manager = StrategyManager.load(path)

        assert len(manager) == 0
        assert manager.register(RSIStrategy()) == "strategy_1"

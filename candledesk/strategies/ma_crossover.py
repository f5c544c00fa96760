from __future__ import annotations

from candledesk.core.errors import ValidationError
from candledesk.core.models import OrderType, TradeSide
from candledesk.indicators.technical import sma
from candledesk.strategies.base import (
    MarketContext,
    StrategyParameter,
    StrategyResult,
    TradingSignal,
    TradingStrategy,
)


class MovingAverageCrossoverStrategy(TradingStrategy):
    """
    Trades the crossing of a fast and a slow simple moving average.

    Golden cross (fast crosses above slow) buys with TP +10% / SL -5%;
    death cross sells with TP -10% / SL +5%.
    """

    strategy_type = "ma_crossover"

    def __init__(self, fast_period: int = 10, slow_period: int = 30, quantity: float = 0.001) -> None:
        if fast_period >= slow_period:
            raise ValidationError("fast_period must be below slow_period")
        self.fast_period = int(fast_period)
        self.slow_period = int(slow_period)
        self.quantity = float(quantity)

    @property
    def name(self) -> str:
        return f"MA Crossover({self.fast_period}/{self.slow_period})"

    @property
    def description(self) -> str:
        return f"SMA{self.fast_period} / SMA{self.slow_period} crossover."

    def evaluate(self, context: MarketContext) -> StrategyResult:
        if len(context.candles) < self.slow_period + 1:
            return StrategyResult.hold("Not enough candles to detect a crossover.")

        close = context.close
        fast = sma(close, self.fast_period)
        slow = sma(close, self.slow_period)
        prev_fast, cur_fast = fast.iloc[-2], fast.iloc[-1]
        prev_slow, cur_slow = slow.iloc[-2], slow.iloc[-1]
        price = context.current_price
        label = f"MA{self.fast_period}={cur_fast:.2f}, MA{self.slow_period}={cur_slow:.2f}"

        if prev_fast <= prev_slow and cur_fast > cur_slow:
            return StrategyResult(
                TradingSignal(
                    side=TradeSide.BUY,
                    quantity=self.quantity,
                    order_type=OrderType.MARKET,
                    take_profit=price * 1.10,
                    stop_loss=price * 0.95,
                ),
                reason=f"Bullish crossover: {label}",
                confidence=0.7,
            )
        if prev_fast >= prev_slow and cur_fast < cur_slow:
            return StrategyResult(
                TradingSignal(
                    side=TradeSide.SELL,
                    quantity=self.quantity,
                    order_type=OrderType.MARKET,
                    take_profit=price * 0.90,
                    stop_loss=price * 1.05,
                ),
                reason=f"Bearish crossover: {label}",
                confidence=0.7,
            )
        return StrategyResult.hold(f"No crossover: {label}")

    def parameters(self) -> list[StrategyParameter]:
        return [
            StrategyParameter("fast_period", self.fast_period, 2, 50, "Fast SMA period"),
            StrategyParameter("slow_period", self.slow_period, 5, 200, "Slow SMA period"),
            StrategyParameter("quantity", self.quantity, 0.000001, 1.0, "Order quantity"),
        ]

    def _set_parameter(self, name: str, value: float) -> None:
        if name == "fast_period":
            if int(value) >= self.slow_period:
                raise ValidationError("fast_period must be below slow_period")
            self.fast_period = int(value)
        elif name == "slow_period":
            if int(value) <= self.fast_period:
                raise ValidationError("slow_period must be above fast_period")
            self.slow_period = int(value)
        elif name == "quantity":
            self.quantity = float(value)

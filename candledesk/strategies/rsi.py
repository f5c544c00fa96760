from __future__ import annotations

from candledesk.core.errors import ValidationError
from candledesk.core.models import OrderType, TradeSide
from candledesk.indicators.technical import rsi
from candledesk.strategies.base import (
    MarketContext,
    StrategyParameter,
    StrategyResult,
    TradingSignal,
    TradingStrategy,
)

# Take-profit / stop-loss distance from the entry price.
_TP_SL_PCT = 0.05


class RSIStrategy(TradingStrategy):
    """Buy when RSI is oversold, sell when it is overbought."""

    strategy_type = "rsi"

    def __init__(
        self,
        rsi_period: int = 14,
        oversold_threshold: float = 30.0,
        overbought_threshold: float = 70.0,
        quantity: float = 0.001,
    ) -> None:
        if oversold_threshold >= overbought_threshold:
            raise ValidationError("oversold_threshold must be below overbought_threshold")
        self.rsi_period = int(rsi_period)
        self.oversold_threshold = float(oversold_threshold)
        self.overbought_threshold = float(overbought_threshold)
        self.quantity = float(quantity)

    @property
    def name(self) -> str:
        return f"RSI({self.rsi_period})"

    @property
    def description(self) -> str:
        return (
            f"Buys below RSI {self.oversold_threshold:g}, "
            f"sells above RSI {self.overbought_threshold:g}."
        )

    def evaluate(self, context: MarketContext) -> StrategyResult:
        if len(context.candles) <= self.rsi_period:
            return StrategyResult.hold("Not enough candles to compute RSI.")
        value = rsi(context.close, self.rsi_period).iloc[-1]
        price = context.current_price

        if value < self.oversold_threshold:
            return StrategyResult(
                TradingSignal(
                    side=TradeSide.BUY,
                    quantity=self.quantity,
                    order_type=OrderType.MARKET,
                    take_profit=price * (1 + _TP_SL_PCT),
                    stop_loss=price * (1 - _TP_SL_PCT),
                ),
                reason=f"RSI {value:.2f} oversold (< {self.oversold_threshold:g})",
                confidence=min(1.0, (self.oversold_threshold - value) / self.oversold_threshold),
            )
        if value > self.overbought_threshold:
            return StrategyResult(
                TradingSignal(
                    side=TradeSide.SELL,
                    quantity=self.quantity,
                    order_type=OrderType.MARKET,
                    take_profit=price * (1 - _TP_SL_PCT),
                    stop_loss=price * (1 + _TP_SL_PCT),
                ),
                reason=f"RSI {value:.2f} overbought (> {self.overbought_threshold:g})",
                confidence=min(
                    1.0,
                    (value - self.overbought_threshold) / (100.0 - self.overbought_threshold),
                ),
            )
        return StrategyResult.hold(f"RSI {value:.2f} neutral")

    def parameters(self) -> list[StrategyParameter]:
        return [
            StrategyParameter("rsi_period", self.rsi_period, 5, 50, "RSI lookback period"),
            StrategyParameter("oversold_threshold", self.oversold_threshold, 10, 40, "Buy below this RSI"),
            StrategyParameter("overbought_threshold", self.overbought_threshold, 60, 90, "Sell above this RSI"),
            StrategyParameter("quantity", self.quantity, 0.000001, 1.0, "Order quantity"),
        ]

    def _set_parameter(self, name: str, value: float) -> None:
        if name == "rsi_period":
            self.rsi_period = int(value)
        elif name == "oversold_threshold":
            self.oversold_threshold = float(value)
        elif name == "overbought_threshold":
            self.overbought_threshold = float(value)
        elif name == "quantity":
            self.quantity = float(value)

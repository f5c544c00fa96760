"""
Strategy interface.

A strategy looks at a ``MarketContext`` (recent candles plus the current
price) and answers with a ``StrategyResult``: buy, sell or hold, with the
order parameters to use.  Strategies never touch the ledger themselves;
``PaperTrader.apply_signal`` routes their signals.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import pandas as pd

from candledesk.core.errors import ValidationError
from candledesk.core.models import OrderType, SeriesId, TradeSide


class TradingMode(Enum):
    BUY_ONLY = "buy_only"
    SELL_ONLY = "sell_only"
    BOTH = "both"

    def allows(self, side: TradeSide) -> bool:
        if self is TradingMode.BUY_ONLY:
            return side is TradeSide.BUY
        if self is TradingMode.SELL_ONLY:
            return side is TradeSide.SELL
        return True


@dataclass
class MarketContext:
    symbol: str
    series_id: SeriesId
    candles: pd.DataFrame          # oldest first, columns ts/open/high/low/close/volume
    current_price: float
    current_volume: float = 0.0

    @property
    def close(self) -> pd.Series:
        return self.candles["close"].astype(float)


@dataclass
class TradingSignal:
    """What to do.  ``side`` is ``None`` for hold."""
    side: Optional[TradeSide] = None
    quantity: float = 0.0
    order_type: OrderType = OrderType.MARKET
    limit_price: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None

    @property
    def is_hold(self) -> bool:
        return self.side is None


@dataclass
class StrategyResult:
    signal: TradingSignal = field(default_factory=TradingSignal)
    reason: str = ""
    confidence: float = 0.0

    @classmethod
    def hold(cls, reason: str) -> "StrategyResult":
        return cls(TradingSignal(), reason, 0.0)


@dataclass
class StrategyParameter:
    name: str
    value: float
    min: float
    max: float
    description: str = ""


class TradingStrategy(ABC):
    """Base class for strategies; ``strategy_type`` tags it in saved files."""

    strategy_type: str = ""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    def description(self) -> str:
        return ""

    @abstractmethod
    def evaluate(self, context: MarketContext) -> StrategyResult:
        pass

    @abstractmethod
    def parameters(self) -> list[StrategyParameter]:
        pass

    @abstractmethod
    def _set_parameter(self, name: str, value: float) -> None:
        pass

    def update_parameter(self, name: str, value: float) -> None:
        """Set *name* to *value* after checking it against the parameter's range."""
        param = next((p for p in self.parameters() if p.name == name), None)
        if param is None:
            raise ValidationError(f"{self.name}: unknown parameter {name!r}")
        if not param.min <= value <= param.max:
            raise ValidationError(
                f"{self.name}: {name}={value} outside [{param.min}, {param.max}]"
            )
        self._set_parameter(name, value)

    def parameter_values(self) -> dict[str, float]:
        return {p.name: p.value for p in self.parameters()}

"""
Registry of trading strategies and their persistence.

Saved file layout (``data/strategies.json``)::

    {
      "next_id": 3,
      "strategies": [
        {
          "id": "strategy_1",
          "strategy_type": "rsi",
          "parameters": {"rsi_period": 14, "oversold_threshold": 30, ...},
          "enabled": true,
          "status": "active",
          "allowed_timeframes": ["1h", "4h"],
          "trading_mode": "both"
        }
      ]
    }

``strategy_type`` selects the class on load; ``allowed_timeframes`` of
``null`` means every interval.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from candledesk.core.errors import ValidationError
from candledesk.strategies.base import MarketContext, StrategyResult, TradingMode, TradingStrategy
from candledesk.strategies.ma_crossover import MovingAverageCrossoverStrategy
from candledesk.strategies.rsi import RSIStrategy

STRATEGY_TYPES: dict[str, type[TradingStrategy]] = {
    RSIStrategy.strategy_type: RSIStrategy,
    MovingAverageCrossoverStrategy.strategy_type: MovingAverageCrossoverStrategy,
}


class StrategyStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass
class RegisteredStrategy:
    id: str
    strategy: TradingStrategy
    enabled: bool = False
    status: StrategyStatus = StrategyStatus.ACTIVE
    allowed_timeframes: Optional[list[str]] = None
    trading_mode: TradingMode = TradingMode.BOTH

    def runs_on(self, interval: str) -> bool:
        if not self.enabled or self.status is not StrategyStatus.ACTIVE:
            return False
        return self.allowed_timeframes is None or interval in self.allowed_timeframes


class StrategyManager:
    """
    Parameters
    ----------
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._strategies: dict[str, RegisteredStrategy] = {}
        self.next_id = 1

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(
        self,
        strategy: TradingStrategy,
        enabled: bool = False,
        allowed_timeframes: Optional[list[str]] = None,
        trading_mode: TradingMode = TradingMode.BOTH,
    ) -> str:
        strategy_id = f"strategy_{self.next_id}"
        self.next_id += 1
        self._strategies[strategy_id] = RegisteredStrategy(
            id=strategy_id,
            strategy=strategy,
            enabled=enabled,
            allowed_timeframes=allowed_timeframes,
            trading_mode=trading_mode,
        )
        self.logger.info(f"Registered {strategy.name} as {strategy_id}.")
        return strategy_id

    def remove(self, strategy_id: str) -> bool:
        return self._strategies.pop(strategy_id, None) is not None

    def get(self, strategy_id: str) -> Optional[RegisteredStrategy]:
        return self._strategies.get(strategy_id)

    def all(self) -> list[RegisteredStrategy]:
        return list(self._strategies.values())

    def enable(self, strategy_id: str) -> None:
        self._require(strategy_id).enabled = True

    def disable(self, strategy_id: str) -> None:
        self._require(strategy_id).enabled = False

    def set_status(self, strategy_id: str, status: StrategyStatus) -> None:
        self._require(strategy_id).status = status

    def set_timeframes(self, strategy_id: str, timeframes: Optional[list[str]]) -> None:
        self._require(strategy_id).allowed_timeframes = list(timeframes) if timeframes is not None else None

    def set_trading_mode(self, strategy_id: str, mode: TradingMode) -> None:
        self._require(strategy_id).trading_mode = mode

    def update_parameter(self, strategy_id: str, name: str, value: float) -> None:
        self._require(strategy_id).strategy.update_parameter(name, value)

    def __len__(self) -> int:
        return len(self._strategies)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_all(self, context: MarketContext) -> list[tuple[RegisteredStrategy, StrategyResult]]:
        """
        Evaluate every enabled, active strategy allowed on the context's
        interval.  Signals the strategy's trading mode forbids come back as
        holds.
        """
        results = []
        for reg in self._strategies.values():
            if not reg.runs_on(context.series_id.interval):
                continue
            result = reg.strategy.evaluate(context)
            side = result.signal.side
            if side is not None and not reg.trading_mode.allows(side):
                result = StrategyResult.hold(
                    f"{side.value} blocked by {reg.trading_mode.value} mode ({result.reason})"
                )
            results.append((reg, result))
        return results

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "next_id": self.next_id,
            "strategies": [
                {
                    "id": reg.id,
                    "strategy_type": reg.strategy.strategy_type,
                    "parameters": reg.strategy.parameter_values(),
                    "enabled": reg.enabled,
                    "status": reg.status.value,
                    "allowed_timeframes": reg.allowed_timeframes,
                    "trading_mode": reg.trading_mode.value,
                }
                for reg in self._strategies.values()
            ],
        }
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(path)

    @classmethod
    def load(cls, path: str | Path, logger: Optional[logging.Logger] = None) -> "StrategyManager":
        """Rebuild a manager from *path*; unknown or invalid entries are skipped."""
        manager = cls(logger=logger)
        path = Path(path)
        if not path.exists():
            return manager
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
        except (json.JSONDecodeError, ValueError) as exc:
            manager.logger.error(f"Could not read strategies {path}: {exc}. Starting empty.")
            return manager

        for item in data.get("strategies", []):
            try:
                strategy_cls = STRATEGY_TYPES[item["strategy_type"]]
                strategy = strategy_cls(**item.get("parameters", {}))
                reg = RegisteredStrategy(
                    id=item["id"],
                    strategy=strategy,
                    enabled=bool(item.get("enabled", False)),
                    status=StrategyStatus(item.get("status", "active")),
                    allowed_timeframes=item.get("allowed_timeframes"),
                    trading_mode=TradingMode(item.get("trading_mode", "both")),
                )
            except (KeyError, TypeError, ValueError, ValidationError) as exc:
                manager.logger.warning(f"Skipping saved strategy {item!r}: {exc}")
                continue
            manager._strategies[reg.id] = reg

        used = [
            int(sid.rpartition("_")[2])
            for sid in manager._strategies
            if sid.rpartition("_")[2].isdigit()
        ]
        manager.next_id = max(int(data.get("next_id", 1)), max(used, default=0) + 1)
        manager.logger.info(f"Loaded {len(manager)} strategies from {path}.")
        return manager

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, strategy_id: str) -> RegisteredStrategy:
        reg = self._strategies.get(strategy_id)
        if reg is None:
            raise ValidationError(f"Unknown strategy id: {strategy_id!r}")
        return reg

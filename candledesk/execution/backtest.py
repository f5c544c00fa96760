"""
Replay a stored series through the matching engine and one strategy.

Each step feeds the candle's close to ``PaperTrader.on_price`` (pending
orders, then TP/SL) and then evaluates the strategy on the candles seen so
far, with no look-ahead.  The ledger is reset at the start of every run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from candledesk.core.models import Trade
from candledesk.data.candle_store import CandleStore
from candledesk.execution.account import AccountInfo
from candledesk.execution.ledger import TradingLedger
from candledesk.execution.paper_trader import PaperTrader
from candledesk.strategies.base import MarketContext, TradingStrategy


@dataclass
class BacktestReport:
    strategy_name: str
    candles: int = 0
    trades: list[Trade] = field(default_factory=list)
    realized_pnl: float = 0.0
    final_equity: float = 0.0
    open_positions: int = 0

    @property
    def closing_trades(self) -> list[Trade]:
        return [t for t in self.trades if t.realized_pnl != 0.0]

    @property
    def win_rate(self) -> float:
        closes = self.closing_trades
        if not closes:
            return 0.0
        return sum(1 for t in closes if t.realized_pnl > 0) / len(closes)


class Backtester:
    """
    Parameters
    ----------
    config : dict, optional
        App config; the ``execution`` section sets balance and quantity.
    lookback : int
        Maximum number of past candles handed to the strategy per step.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        lookback: int = 500,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.ledger = TradingLedger(scope="backtest", logger=self.logger)
        self.trader = PaperTrader(self.ledger, store=None, config=config, logger=self.logger)
        self.lookback = lookback

    @property
    def account(self) -> AccountInfo:
        return self.trader.account

    def run(
        self,
        store: CandleStore,
        strategy: TradingStrategy,
        start_ts: Optional[int] = None,
        strategy_id: str = "backtest",
    ) -> BacktestReport:
        """Replay *store* from *start_ts* (or the first candle) to the end."""
        self.ledger.reset()
        self.trader.last_prices.clear()
        sid = store.series_id
        frame = store.to_frame()
        report = BacktestReport(strategy_name=strategy.name)

        start_idx = 0
        if start_ts is not None:
            start_idx = int(frame["ts"].searchsorted(start_ts, side="left"))

        for idx in range(start_idx, len(frame)):
            row = frame.iloc[idx]
            ts, close = int(row["ts"]), float(row["close"])
            report.trades.extend(self.trader.on_price(sid.symbol, close, ts))

            window = frame.iloc[max(0, idx + 1 - self.lookback) : idx + 1]
            context = MarketContext(
                symbol=sid.symbol,
                series_id=sid,
                candles=window,
                current_price=close,
                current_volume=float(row["volume"]),
            )
            result = strategy.evaluate(context)
            executed = self.trader.apply_signal(strategy_id, strategy.name, result, sid.symbol, close, ts)
            if isinstance(executed, Trade):
                report.trades.append(executed)
            report.candles += 1

        account = self.trader.refresh_account()
        report.realized_pnl = self.ledger.total_realized_pnl()
        report.final_equity = account.equity
        report.open_positions = self.ledger.open_positions_count()
        self.logger.info(
            f"[{sid}] Backtest {strategy.name}: {report.candles} candles, "
            f"{len(report.trades)} trades, realized P&L {report.realized_pnl:.4f}, "
            f"win rate {report.win_rate:.0%}."
        )
        return report

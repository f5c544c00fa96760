from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from candledesk.execution.ledger import TradingLedger

DEFAULT_INITIAL_BALANCE = 10_000.0


@dataclass
class AccountInfo:
    """Balance, equity and margin derived from a ledger and the latest prices."""
    initial_balance: float = DEFAULT_INITIAL_BALANCE
    total_balance: float = DEFAULT_INITIAL_BALANCE
    equity: float = DEFAULT_INITIAL_BALANCE
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    used_margin: float = 0.0
    free_margin: float = DEFAULT_INITIAL_BALANCE
    margin_level: float = 0.0    # percent; 0 when no margin is used
    open_positions: int = 0
    margin_call: bool = False
    liquidation: bool = False

    def update_from_ledger(self, ledger: TradingLedger, prices: Mapping[str, float]) -> "AccountInfo":
        """
        Recompute every field.

        Positions on a symbol missing from *prices* are valued at their
        entry price (zero unrealized P&L).
        """
        self.realized_pnl = ledger.total_realized_pnl()
        self.unrealized_pnl = sum(
            p.unrealized_pnl(prices.get(p.symbol, p.entry_price)) for p in ledger.positions
        )
        self.used_margin = ledger.margin_used()
        self.open_positions = ledger.open_positions_count()

        self.total_balance = self.initial_balance + self.realized_pnl
        self.equity = self.total_balance + self.unrealized_pnl
        self.free_margin = self.total_balance - self.used_margin

        if self.used_margin > 0:
            self.margin_level = self.equity / self.used_margin * 100.0
        else:
            self.margin_level = 0.0
        self.margin_call = self.used_margin > 0 and 0 < self.margin_level < 100
        self.liquidation = self.used_margin > 0 and self.margin_level <= 0
        return self

    def can_open(self, notional: float) -> bool:
        return notional <= self.free_margin

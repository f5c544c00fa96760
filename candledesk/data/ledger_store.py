"""
JSON persistence for the paper-trading ledger.

File layout (``data/paper_trading.json``)::

    {
      "trades": [
        {"id": 1, "symbol": "BTCUSDT", "side": "buy", "quantity": 1.0,
         "price": 100.0, "total_amount": 100.0, "realized_pnl": 0.0,
         "timestamp": 1767225600, "strategy_id": null, "strategy_name": null}
      ],
      "open_positions": [...],
      "pending_orders": [...],
      "next_trade_id": 2,
      "next_order_id": 1
    }
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from candledesk.execution.ledger import TradingLedger


class LedgerStore:
    """
    Reads and rewrites the ledger document.

    ``save`` writes a temporary file and then replaces the target, so a
    reader never sees a half-written document.
    """

    def __init__(self, path: str | Path, logger: Optional[logging.Logger] = None) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)

    def load(self, scope: str = "paper") -> TradingLedger:
        """Read the ledger from disk.  Returns an empty ledger if the file is missing or unreadable."""
        if not self.path.exists():
            return TradingLedger(scope=scope, logger=self.logger)
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError(f"expected an object, got {type(raw).__name__}")
        except (json.JSONDecodeError, ValueError) as exc:
            self.logger.error(f"Could not read ledger {self.path}: {exc}. Starting empty.")
            return TradingLedger(scope=scope, logger=self.logger)

        ledger = TradingLedger.from_dict(raw, scope=scope, logger=self.logger)
        self.logger.info(
            f"Ledger loaded: {len(ledger.trades)} trades, "
            f"{ledger.open_positions_count()} open positions, "
            f"{len(ledger.pending_orders)} pending orders."
        )
        return ledger

    def save(self, ledger: TradingLedger) -> None:
        """Atomically write the ledger to disk."""
        data = ledger.to_dict()
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.path)

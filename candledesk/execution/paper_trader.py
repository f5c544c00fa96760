"""
Simulated execution layer on top of ``TradingLedger``.

Routes manual orders and strategy signals into the ledger, applying the
reversal policy the ledger itself leaves to its caller: a market order
first closes an opposite position when one exists, and only opens a new
position otherwise.  Opening requires enough free margin on the derived
account.

Usage::

    from candledesk.execution.paper_trader import PaperTrader

    trader = PaperTrader(ledger, store=LedgerStore(path), config=config, logger=logger)

    # Buy at market (closes a short first if one is open)
    trade = trader.place_market_order("BTCUSDT", TradeSide.BUY, 0.01, price=65000.0)

    # Feed a tick; pending orders and TP/SL are matched
    trades = trader.on_price("BTCUSDT", 65100.0)
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from candledesk.core.models import OrderType, PendingOrder, Trade, TradeSide
from candledesk.data.ledger_store import LedgerStore
from candledesk.execution.account import DEFAULT_INITIAL_BALANCE, AccountInfo
from candledesk.execution.ledger import TradingLedger
from candledesk.strategies.base import StrategyResult


class PaperTrader:
    """
    Places simulated orders.

    Reads configuration from the ``execution`` section::

        {
            "execution": {
                "paper_trading": true,
                "initial_balance": 10000.0,
                "default_quantity": 0.001
            }
        }

    Manual order methods (``place_market_order``, ``place_limit_order``,
    ``cancel_order``) save the ledger immediately.  The tick path
    (``on_price``, ``apply_signal``) only mutates memory; the caller checks
    ``ledger.version`` and saves once per pass.

    Parameters
    ----------
    ledger : TradingLedger
        Ledger to trade on.
    store : LedgerStore, optional
        Where to save the ledger; nothing is saved without one.
    config : dict, optional
        App config containing an ``execution`` section.
    logger : logging.Logger, optional
        Pipeline logger.
    """

    def __init__(
        self,
        ledger: TradingLedger,
        store: Optional[LedgerStore] = None,
        config: Optional[dict] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.ledger = ledger
        self.store = store

        execution_cfg = (config or {}).get("execution", {})
        self.enabled: bool = execution_cfg.get("paper_trading", True)
        self.default_quantity: float = execution_cfg.get("default_quantity", 0.001)
        self.account = AccountInfo(
            initial_balance=execution_cfg.get("initial_balance", DEFAULT_INITIAL_BALANCE)
        )
        self.last_prices: dict[str, float] = {}
        self.last_save_error: Optional[str] = None
        self.refresh_account()

    # ------------------------------------------------------------------
    # Manual orders
    # ------------------------------------------------------------------

    def place_market_order(
        self,
        symbol: str,
        side: TradeSide,
        quantity: Optional[float],
        price: float,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
        timestamp: Optional[int] = None,
    ) -> Optional[Trade]:
        """Close the opposite position if any, else open one.  ``None`` when rejected."""
        trade = self._market_order(
            symbol, side, quantity or self.default_quantity, price,
            take_profit, stop_loss, timestamp,
        )
        if trade is not None:
            self.save()
        return trade

    def place_limit_order(
        self,
        symbol: str,
        side: TradeSide,
        quantity: Optional[float],
        limit_price: float,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
        timestamp: Optional[int] = None,
    ) -> PendingOrder:
        order = self.ledger.create_pending_order(
            symbol, side, quantity or self.default_quantity, limit_price,
            take_profit=take_profit, stop_loss=stop_loss, timestamp=timestamp,
        )
        self.save()
        return order

    def cancel_order(self, order_id: int) -> bool:
        cancelled = self.ledger.cancel_pending_order(order_id)
        if cancelled:
            self.save()
        return cancelled

    # ------------------------------------------------------------------
    # Tick path
    # ------------------------------------------------------------------

    def on_price(self, symbol: str, price: float, timestamp: Optional[int] = None) -> list[Trade]:
        """Match pending orders, then TP/SL, for one price update."""
        self.last_prices[symbol.upper()] = price
        trades = self.ledger.on_price(symbol, price, timestamp)
        self.refresh_account()
        return trades

    def apply_signal(
        self,
        strategy_id: str,
        strategy_name: str,
        result: StrategyResult,
        symbol: str,
        price: float,
        timestamp: Optional[int] = None,
    ) -> Optional[Union[Trade, PendingOrder]]:
        """Turn a strategy result into a market trade or a pending order."""
        signal = result.signal
        if signal.is_hold:
            return None

        quantity = signal.quantity or self.default_quantity
        self.logger.info(
            f"[{symbol}] {strategy_name} signal {signal.side.value} "
            f"{quantity} ({result.reason}, confidence {result.confidence:.2f})"
        )
        if signal.order_type is OrderType.LIMIT:
            return self.ledger.create_pending_order(
                symbol, signal.side, quantity, signal.limit_price or price,
                take_profit=signal.take_profit,
                stop_loss=signal.stop_loss,
                timestamp=timestamp,
                strategy_id=strategy_id,
                strategy_name=strategy_name,
            )
        return self._market_order(
            symbol, signal.side, quantity, price,
            signal.take_profit, signal.stop_loss, timestamp,
            strategy_id=strategy_id, strategy_name=strategy_name,
        )

    # ------------------------------------------------------------------
    # Account / persistence
    # ------------------------------------------------------------------

    def refresh_account(self) -> AccountInfo:
        return self.account.update_from_ledger(self.ledger, self.last_prices)

    def save(self) -> bool:
        """Write the ledger; failures are logged and reported, never raised."""
        if self.store is None:
            return True
        try:
            self.store.save(self.ledger)
        except (OSError, TypeError, ValueError) as exc:
            self.last_save_error = str(exc)
            self.logger.error(f"Failed to save paper trading ledger: {exc}")
            return False
        self.last_save_error = None
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _market_order(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        price: float,
        take_profit: Optional[float],
        stop_loss: Optional[float],
        timestamp: Optional[int],
        strategy_id: Optional[str] = None,
        strategy_name: Optional[str] = None,
    ) -> Optional[Trade]:
        trade = self.ledger.close_position(
            symbol, side, quantity, price, timestamp=timestamp,
            strategy_id=strategy_id, strategy_name=strategy_name,
        )
        if trade is None:
            self.refresh_account()
            notional = quantity * price
            if not self.account.can_open(notional):
                self.logger.warning(
                    f"[{symbol}] Order rejected: {notional:.2f} exceeds free margin "
                    f"{self.account.free_margin:.2f}."
                )
                return None
            trade = self.ledger.open_position(
                symbol, side, quantity, price,
                take_profit=take_profit, stop_loss=stop_loss, timestamp=timestamp,
                strategy_id=strategy_id, strategy_name=strategy_name,
            )
        self.refresh_account()
        return trade

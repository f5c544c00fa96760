"""
Paper-trading ledger and order-matching engine.

The ledger owns the open positions, pending limit orders and trade history
of one account scope.  It only mutates memory; persisting it is the
caller's job (see ``candledesk.data.ledger_store``), and ``version`` tells
the caller whether anything changed since the last save.

Matching rules
--------------
Pending limit orders
    BUY triggers when ``price <= limit``, SELL when ``price >= limit``.
    A triggered order fills at its limit price.  BUY opens or extends a
    long; SELL closes a long if one exists, otherwise opens a short.
Take-profit / stop-loss
    Long closes when ``price >= TP`` or ``price <= SL``.
    Short closes when ``price <= TP`` or ``price >= SL``.
    The close fills at the trigger level (the TP or SL price).
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict
from typing import Optional

from candledesk.core.errors import ValidationError
from candledesk.core.models import PendingOrder, Position, Trade, TradeSide


def _now() -> int:
    return int(time.time())


def _check_positive(name: str, value: float) -> float:
    if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
        raise ValidationError(f"{name} must be a positive finite number, got {value!r}")
    return float(value)


def _check_optional_price(name: str, value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return _check_positive(name, value)


def _check_symbol(symbol: str) -> str:
    if not isinstance(symbol, str) or not symbol.strip():
        raise ValidationError(f"Invalid symbol: {symbol!r}")
    return symbol.strip().upper()


class TradingLedger:
    """
    Positions, pending orders and trades for one account.

    Parameters
    ----------
    scope : str
        Account scope label, e.g. ``"paper"`` or ``"backtest"``.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(self, scope: str = "paper", logger: Optional[logging.Logger] = None) -> None:
        self.scope = scope
        self.logger = logger or logging.getLogger(__name__)
        self.trades: list[Trade] = []
        self.positions: list[Position] = []
        self.pending_orders: list[PendingOrder] = []
        self.next_trade_id = 1
        self.next_order_id = 1
        self.version = 0

    # ------------------------------------------------------------------
    # Orders and positions
    # ------------------------------------------------------------------

    def open_position(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        price: float,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
        timestamp: Optional[int] = None,
        strategy_id: Optional[str] = None,
        strategy_name: Optional[str] = None,
    ) -> Trade:
        """
        Open a position, or add to the open one on the same side.

        Adding to a position averages the entry price by quantity; TP/SL
        are replaced when new values are given.
        """
        symbol = _check_symbol(symbol)
        quantity = _check_positive("quantity", quantity)
        price = _check_positive("price", price)
        take_profit = _check_optional_price("take_profit", take_profit)
        stop_loss = _check_optional_price("stop_loss", stop_loss)
        ts = _now() if timestamp is None else timestamp

        position = self.position(symbol, side)
        if position is None:
            position = Position(
                symbol=symbol,
                side=side,
                quantity=quantity,
                entry_price=price,
                open_timestamp=ts,
                take_profit=take_profit,
                stop_loss=stop_loss,
            )
            self.positions.append(position)
        else:
            total = position.quantity + quantity
            position.entry_price = (
                position.entry_price * position.quantity + price * quantity
            ) / total
            position.quantity = total
            if take_profit is not None:
                position.take_profit = take_profit
            if stop_loss is not None:
                position.stop_loss = stop_loss

        trade = self._record_trade(symbol, side, quantity, price, 0.0, ts, strategy_id, strategy_name)
        self.logger.info(
            f"[{symbol}] Opened {side.value} {quantity} @ {price} "
            f"(position {position.quantity} @ {position.entry_price:.8g})"
        )
        return trade

    def close_position(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        price: float,
        timestamp: Optional[int] = None,
        strategy_id: Optional[str] = None,
        strategy_name: Optional[str] = None,
    ) -> Optional[Trade]:
        """
        Close (part of) the position opposite to *side*.

        A SELL request closes a long, a BUY request closes a short.
        Returns ``None`` when there is no such position.
        """
        symbol = _check_symbol(symbol)
        quantity = _check_positive("quantity", quantity)
        price = _check_positive("price", price)

        position = self.position(symbol, side.opposite)
        if position is None:
            return None
        return self._close(
            position, quantity, price,
            _now() if timestamp is None else timestamp,
            strategy_id, strategy_name,
        )

    def create_pending_order(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        limit_price: float,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
        timestamp: Optional[int] = None,
        strategy_id: Optional[str] = None,
        strategy_name: Optional[str] = None,
    ) -> PendingOrder:
        order = PendingOrder(
            id=self.next_order_id,
            symbol=_check_symbol(symbol),
            side=side,
            quantity=_check_positive("quantity", quantity),
            limit_price=_check_positive("limit_price", limit_price),
            created_timestamp=_now() if timestamp is None else timestamp,
            take_profit=_check_optional_price("take_profit", take_profit),
            stop_loss=_check_optional_price("stop_loss", stop_loss),
            strategy_id=strategy_id,
            strategy_name=strategy_name,
        )
        self.next_order_id += 1
        self.pending_orders.append(order)
        self.version += 1
        self.logger.info(
            f"[{order.symbol}] Pending {side.value} order #{order.id}: "
            f"{order.quantity} @ {order.limit_price}"
        )
        return order

    def cancel_pending_order(self, order_id: int) -> bool:
        for i, order in enumerate(self.pending_orders):
            if order.id == order_id:
                del self.pending_orders[i]
                self.version += 1
                self.logger.info(f"[{order.symbol}] Cancelled order #{order_id}.")
                return True
        return False

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def match_pending_orders(self, symbol: str, price: float, timestamp: Optional[int] = None) -> list[Trade]:
        """Fill every pending order on *symbol* triggered by *price*."""
        symbol = symbol.upper()
        triggered = [o for o in self.pending_orders if o.symbol == symbol and o.is_triggered(price)]
        if not triggered:
            return []

        ts = _now() if timestamp is None else timestamp
        trades = []
        for order in triggered:
            self.pending_orders.remove(order)
            self.version += 1
            self.logger.info(
                f"[{symbol}] Order #{order.id} triggered at {price} "
                f"(limit {order.limit_price})."
            )
            trade = None
            if order.side is TradeSide.SELL:
                trade = self.close_position(
                    symbol, TradeSide.SELL, order.quantity, order.limit_price,
                    timestamp=ts, strategy_id=order.strategy_id, strategy_name=order.strategy_name,
                )
            if trade is None:
                trade = self.open_position(
                    symbol, order.side, order.quantity, order.limit_price,
                    take_profit=order.take_profit,
                    stop_loss=order.stop_loss,
                    timestamp=ts,
                    strategy_id=order.strategy_id,
                    strategy_name=order.strategy_name,
                )
            trades.append(trade)
        return trades

    def match_take_profit_stop_loss(self, symbol: str, price: float, timestamp: Optional[int] = None) -> list[Trade]:
        """Close every position on *symbol* whose TP or SL *price* reaches."""
        symbol = symbol.upper()
        ts = _now() if timestamp is None else timestamp
        trades = []
        for position in [p for p in self.positions if p.symbol == symbol]:
            level = _trigger_level(position, price)
            if level is None:
                continue
            reason = "take-profit" if level == position.take_profit else "stop-loss"
            self.logger.info(f"[{symbol}] {reason} hit on {position.side.value} at {price} (level {level}).")
            trades.append(self._close(position, position.quantity, level, ts, None, None))
        return trades

    def on_price(self, symbol: str, price: float, timestamp: Optional[int] = None) -> list[Trade]:
        """Run pending-order matching, then TP/SL matching, for one tick."""
        trades = self.match_pending_orders(symbol, price, timestamp)
        trades.extend(self.match_take_profit_stop_loss(symbol, price, timestamp))
        return trades

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def position(self, symbol: str, side: TradeSide) -> Optional[Position]:
        symbol = symbol.upper()
        for p in self.positions:
            if p.symbol == symbol and p.side is side:
                return p
        return None

    def positions_for(self, symbol: str) -> list[Position]:
        symbol = symbol.upper()
        return [p for p in self.positions if p.symbol == symbol]

    def pending_orders_for(self, symbol: str) -> list[PendingOrder]:
        symbol = symbol.upper()
        return [o for o in self.pending_orders if o.symbol == symbol]

    def unrealized_pnl(self, symbol: str, price: float) -> float:
        return sum(p.unrealized_pnl(price) for p in self.positions_for(symbol))

    def total_realized_pnl(self) -> float:
        return sum(t.realized_pnl for t in self.trades)

    def margin_used(self, symbol: Optional[str] = None) -> float:
        positions = self.positions if symbol is None else self.positions_for(symbol)
        return sum(p.margin_used() for p in positions)

    def open_positions_count(self) -> int:
        return len(self.positions)

    def symbols(self) -> set[str]:
        return {p.symbol for p in self.positions} | {o.symbol for o in self.pending_orders}

    # ------------------------------------------------------------------
    # Lifecycle / serialization
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Forget everything, e.g. when a backtest restarts."""
        self.trades.clear()
        self.positions.clear()
        self.pending_orders.clear()
        self.next_trade_id = 1
        self.next_order_id = 1
        self.version += 1
        self.logger.info(f"Ledger '{self.scope}' reset.")

    def to_dict(self) -> dict:
        def encode(record) -> dict:
            data = asdict(record)
            data["side"] = record.side.value
            return data

        return {
            "trades": [encode(t) for t in self.trades],
            "open_positions": [encode(p) for p in self.positions],
            "pending_orders": [encode(o) for o in self.pending_orders],
            "next_trade_id": self.next_trade_id,
            "next_order_id": self.next_order_id,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict,
        scope: str = "paper",
        logger: Optional[logging.Logger] = None,
    ) -> "TradingLedger":
        """Rebuild a ledger; malformed records are skipped and logged."""
        ledger = cls(scope=scope, logger=logger)
        ledger.trades = _decode_records(data.get("trades", []), Trade, "trade", ledger.logger)
        ledger.positions = _decode_records(data.get("open_positions", []), Position, "position", ledger.logger)
        ledger.pending_orders = _decode_records(data.get("pending_orders", []), PendingOrder, "order", ledger.logger)

        # Counters never go backwards, even if the file was edited by hand.
        max_trade = max((t.id for t in ledger.trades), default=0)
        max_order = max((o.id for o in ledger.pending_orders), default=0)
        ledger.next_trade_id = max(int(data.get("next_trade_id", 1)), max_trade + 1)
        ledger.next_order_id = max(int(data.get("next_order_id", 1)), max_order + 1)
        return ledger

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _close(
        self,
        position: Position,
        quantity: float,
        price: float,
        timestamp: int,
        strategy_id: Optional[str],
        strategy_name: Optional[str],
    ) -> Trade:
        closed_qty = min(quantity, position.quantity)
        pnl = position.unrealized_pnl(price) * (closed_qty / position.quantity)

        if quantity >= position.quantity:
            self.positions.remove(position)
        else:
            position.quantity -= closed_qty

        trade = self._record_trade(
            position.symbol, position.side.opposite, closed_qty, price, pnl,
            timestamp, strategy_id, strategy_name,
        )
        self.logger.info(
            f"[{position.symbol}] Closed {closed_qty} of {position.side.value} "
            f"@ {price}, realized P&L {pnl:.8g}"
        )
        return trade

    def _record_trade(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        price: float,
        realized_pnl: float,
        timestamp: int,
        strategy_id: Optional[str],
        strategy_name: Optional[str],
    ) -> Trade:
        trade = Trade(
            id=self.next_trade_id,
            symbol=symbol,
            side=side,
            quantity=quantity,
            price=price,
            total_amount=quantity * price,
            realized_pnl=realized_pnl,
            timestamp=timestamp,
            strategy_id=strategy_id,
            strategy_name=strategy_name,
        )
        self.next_trade_id += 1
        self.trades.append(trade)
        self.version += 1
        return trade


def _trigger_level(position: Position, price: float) -> Optional[float]:
    """The TP or SL level *price* has reached for *position*, if any."""
    tp, sl = position.take_profit, position.stop_loss
    if position.side is TradeSide.BUY:
        if tp is not None and price >= tp:
            return tp
        if sl is not None and price <= sl:
            return sl
    else:
        if tp is not None and price <= tp:
            return tp
        if sl is not None and price >= sl:
            return sl
    return None


def _decode_records(items: list, record_cls, label: str, logger: logging.Logger) -> list:
    records = []
    for item in items:
        try:
            fields = dict(item)
            fields["side"] = TradeSide(fields["side"])
            for key in ("quantity", "price", "entry_price", "limit_price"):
                if key in fields:
                    value = float(fields[key])
                    if not math.isfinite(value) or value <= 0:
                        raise ValueError(f"{key}={fields[key]!r}")
                    fields[key] = value
            records.append(record_cls(**fields))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Skipping malformed {label} record {item!r}: {exc}")
    return records

"""
Broker Service Interface.

The account/trading surface the workflow engine needs from a broker, plus an
in-process paper broker used by default and in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderSide(Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    """Order types workflow actions can place."""
    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(Enum):
    """Broker-side order status as reported by the paper broker."""
    PENDING = "pending"
    FILLED = "filled"
    REJECTED = "rejected"


class BrokerInterface(ABC):
    """
    Abstract broker interface.

    Workflow runs read the account through `get_account_info` /
    `get_positions` / `get_market_data` and trade through `submit_order`.
    """

    @abstractmethod
    def connect(self) -> bool:
        """Open the broker session; True on success."""

    @abstractmethod
    def disconnect(self) -> bool:
        """Close the broker session."""

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    def get_account_info(self) -> Dict[str, Any]:
        """
        Get account balances.

        Returns:
            Dict with at least cash, equity and buying_power
        """

    @abstractmethod
    def get_positions(self) -> List[Dict[str, Any]]:
        """Open positions, each with at least symbol and quantity."""

    @abstractmethod
    def submit_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None,
        time_in_force: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Submit an order.

        Returns:
            Dict with id, status, filled_quantity, avg_fill_price and, for a
            refused order, reject_reason
        """

    @abstractmethod
    def get_market_data(self, symbol: str) -> Dict[str, Any]:
        """Latest quote for a symbol: price, bid, ask, volume, timestamp."""

    def is_symbol_tradable(self, symbol: str) -> bool:
        """Brokers without an asset list treat every symbol as tradable."""
        return True


class PaperBroker(BrokerInterface):
    """
    Paper trading broker.

    Prices are deterministic per symbol (pinned with `set_price`), market
    orders fill immediately, and limit orders fill only when marketable.
    Buys beyond available cash and sells beyond the held quantity are
    rejected the way a cash account would reject them.
    """

    # Stable quotes for the tickers used in examples and tests.
    STATIC_PRICES = {
        "AAPL": 100.0,
        "MSFT": 300.0,
    }

    def __init__(self, starting_balance: float = 100000.0):
        self.connected = False
        self.balance = float(starting_balance)
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self._next_order_number = 1
        self._pinned_prices: Dict[str, float] = {}

    def connect(self) -> bool:
        self.connected = True
        return True

    def disconnect(self) -> bool:
        self.connected = False
        return True

    def is_connected(self) -> bool:
        return self.connected

    def set_price(self, symbol: str, price: float) -> None:
        """Pin the quote of a symbol."""
        self._pinned_prices[symbol.upper()] = float(price)

    def get_account_info(self) -> Dict[str, Any]:
        holdings = sum(self._mark(symbol)["market_value"] for symbol in list(self.positions))
        return {
            "cash": self.balance,
            "equity": self.balance + holdings,
            "buying_power": max(0.0, self.balance),
        }

    def get_positions(self) -> List[Dict[str, Any]]:
        return [dict(self._mark(symbol)) for symbol in list(self.positions)]

    def submit_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None,
        time_in_force: Optional[str] = None,
    ) -> Dict[str, Any]:
        symbol = symbol.upper()
        order_id = f"paper-{self._next_order_number}"
        self._next_order_number += 1
        quote = self._quote(symbol)

        order: Dict[str, Any] = {
            "id": order_id,
            "symbol": symbol,
            "side": side.value,
            "type": order_type.value,
            "quantity": quantity,
            "price": price,
            "time_in_force": time_in_force,
            "status": OrderStatus.PENDING.value,
            "filled_quantity": 0.0,
            "avg_fill_price": None,
            "reject_reason": None,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.orders[order_id] = order

        if order_type == OrderType.LIMIT:
            if price is None:
                return self._reject(order, "Limit order without a limit price")
            crosses = quote <= price if side == OrderSide.BUY else quote >= price
            if not crosses:
                return order

        if side == OrderSide.BUY and quantity * quote > self.balance:
            return self._reject(order, f"Insufficient cash for {quantity:g} {symbol} at {quote:.2f}")
        held = float(self.positions.get(symbol, {}).get("quantity", 0.0))
        if side == OrderSide.SELL and quantity > held:
            return self._reject(order, f"Cannot sell {quantity:g} {symbol}; holding {held:g}")

        self._fill(symbol, side, quantity, quote)
        order.update(status=OrderStatus.FILLED.value, filled_quantity=quantity, avg_fill_price=quote)
        return order

    def get_market_data(self, symbol: str) -> Dict[str, Any]:
        symbol = symbol.upper()
        quote = self._quote(symbol)
        half_spread = max(0.01, round(quote * 0.0005, 2))
        return {
            "symbol": symbol,
            "price": quote,
            "bid": round(max(0.01, quote - half_spread), 2),
            "ask": round(quote + half_spread, 2),
            "volume": 200_000 + sum(ord(ch) for ch in symbol) * 1_000,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def _quote(self, symbol: str) -> float:
        if symbol in self._pinned_prices:
            return self._pinned_prices[symbol]
        if symbol in self.STATIC_PRICES:
            return self.STATIC_PRICES[symbol]
        # Unknown tickers get a fixed price in 25..425 derived from the name.
        seed = sum((idx + 1) * ord(ch) for idx, ch in enumerate(symbol))
        return float(seed % 400 + 25)

    def _mark(self, symbol: str) -> Dict[str, Any]:
        position = self.positions[symbol]
        position["current_price"] = self._quote(symbol)
        position["market_value"] = position["quantity"] * position["current_price"]
        return position

    @staticmethod
    def _reject(order: Dict[str, Any], reason: str) -> Dict[str, Any]:
        order.update(status=OrderStatus.REJECTED.value, reject_reason=reason)
        return order

    def _fill(self, symbol: str, side: OrderSide, quantity: float, fill_price: float) -> None:
        position = self.positions.get(symbol)
        held = float(position["quantity"]) if position else 0.0
        cost_basis = float(position["avg_entry_price"]) if position else fill_price

        if side == OrderSide.BUY:
            self.balance -= quantity * fill_price
            remaining = held + quantity
            cost_basis = (held * cost_basis + quantity * fill_price) / remaining
        else:
            self.balance += quantity * fill_price
            remaining = held - quantity

        if remaining <= 0:
            self.positions.pop(symbol, None)
            return
        self.positions[symbol] = {
            "symbol": symbol,
            "quantity": remaining,
            "avg_entry_price": cost_basis,
            "current_price": fill_price,
            "market_value": remaining * fill_price,
        }

"""
Portfolio snapshot service.
Builds the account/portfolio view that formula-valued action fields resolve against.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from services.broker import BrokerInterface

logger = logging.getLogger(__name__)


def _safe_float(value: Any) -> Optional[float]:
    """Best-effort float parsing; None when missing or not finite."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


@dataclass
class AccountSnapshot:
    """
    Point-in-time account view.

    A field left as None means the data was unavailable, which makes any
    formula referencing it unresolvable.
    """
    equity: Optional[float] = None
    cash: Optional[float] = None
    buying_power: Optional[float] = None
    positions: Dict[str, float] = field(default_factory=dict)
    prices: Dict[str, float] = field(default_factory=dict)

    def reference_value(self, reference: str) -> Optional[float]:
        """Notional value for a formula reference."""
        if reference in ("portfolio", "equity"):
            return self.equity
        if reference == "cash":
            return self.cash
        if reference == "buying_power":
            return self.buying_power
        return None

    def price_for(self, symbol: Optional[str]) -> Optional[float]:
        if not symbol:
            return None
        return self.prices.get(symbol.upper())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "equity": self.equity,
            "cash": self.cash,
            "buying_power": self.buying_power,
            "positions": dict(self.positions),
            "prices": dict(self.prices),
        }


def load_account_snapshot(broker: Optional[BrokerInterface], symbols: Iterable[str] = ()) -> AccountSnapshot:
    """
    Load an account snapshot from the broker without raising.

    Args:
        broker: Broker to query; None yields an empty snapshot
        symbols: Symbols whose current price should be captured
    """
    snapshot = AccountSnapshot()
    if broker is None:
        return snapshot

    try:
        info = broker.get_account_info()
        snapshot.equity = _safe_float(info.get("equity", info.get("portfolio_value")))
        snapshot.cash = _safe_float(info.get("cash"))
        snapshot.buying_power = _safe_float(info.get("buying_power"))
    except Exception:
        logger.warning("Account info unavailable for snapshot", exc_info=True)

    try:
        for row in broker.get_positions():
            sym = str(row.get("symbol", "")).upper()
            qty = _safe_float(row.get("quantity"))
            if sym and qty:
                snapshot.positions[sym] = snapshot.positions.get(sym, 0.0) + qty
    except Exception:
        logger.warning("Positions unavailable for snapshot", exc_info=True)

    for symbol in {str(s).upper() for s in symbols if s}:
        try:
            price = _safe_float(broker.get_market_data(symbol).get("price"))
        except Exception:
            logger.warning("Market price unavailable for %s", symbol, exc_info=True)
            continue
        if price is not None and price > 0:
            snapshot.prices[symbol] = price

    return snapshot

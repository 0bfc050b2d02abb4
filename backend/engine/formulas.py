"""
Formula-valued action fields.

Grammar (case-insensitive):
    <number>                      literal value
    market                        price only: no limit price
    <pct>% of <reference>         quantity: portfolio|equity|cash|buying_power|position
                                  price:    market
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Optional

from engine.errors import FormulaSyntaxError, UnresolvedFormula
from services.portfolio import AccountSnapshot

_PERCENT_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*%\s*of\s+([a-z_ ]+)$", re.IGNORECASE)
_QUANTITY_REFERENCES = {"portfolio", "equity", "cash", "buying_power", "position"}
_PRICE_REFERENCES = {"market"}
_QUANTITY_DECIMALS = 4


@dataclass(frozen=True)
class Formula:
    """Parsed formula. kind is 'literal', 'market' or 'percent'."""
    kind: str
    value: Optional[float] = None
    reference: Optional[str] = None
    source: str = ""

    def describe(self) -> str:
        if self.kind == "literal":
            return f"{self.value:g}"
        if self.kind == "market":
            return "market"
        return f"{self.value:g}% of {self.reference}"


def parse_formula(text: str, field: str) -> Formula:
    """
    Parse a quantity or price expression.

    Raises:
        FormulaSyntaxError: when the text does not follow the grammar for the field
    """
    if field not in ("quantity", "price"):
        raise ValueError(f"Unsupported formula field: {field}")
    raw = str(text or "").strip()
    if not raw:
        raise FormulaSyntaxError(f"{field} formula is empty")
    lowered = raw.lower()

    if lowered == "market":
        if field != "price":
            raise FormulaSyntaxError("'market' is only valid for price")
        return Formula(kind="market", source=raw)

    try:
        literal = float(lowered)
    except ValueError:
        literal = None
    if literal is not None:
        if not math.isfinite(literal) or literal <= 0:
            raise FormulaSyntaxError(f"{field} must be a positive number, got {raw!r}")
        return Formula(kind="literal", value=literal, source=raw)

    match = _PERCENT_RE.match(lowered)
    if not match:
        raise FormulaSyntaxError(
            f"Unsupported {field} formula {raw!r}; expected a number or '<pct>% of <reference>'"
        )
    pct = float(match.group(1))
    reference = "_".join(match.group(2).split())
    allowed = _QUANTITY_REFERENCES if field == "quantity" else _PRICE_REFERENCES
    if reference not in allowed:
        raise FormulaSyntaxError(
            f"Unknown {field} reference {reference!r}; expected one of {', '.join(sorted(allowed))}"
        )
    if pct <= 0:
        raise FormulaSyntaxError(f"{field} percentage must be positive")
    if field == "quantity" and pct > 100:
        raise FormulaSyntaxError("quantity percentage cannot exceed 100%")
    return Formula(kind="percent", value=pct, reference=reference, source=raw)


def resolve_price(formula: Optional[Formula], symbol: str, snapshot: AccountSnapshot) -> Optional[float]:
    """Resolve a price formula. None means a market order."""
    if formula is None or formula.kind == "market":
        return None
    if formula.kind == "literal":
        return float(formula.value)
    market_price = snapshot.price_for(symbol)
    if market_price is None:
        raise UnresolvedFormula(f"No market price for {symbol} to resolve {formula.source!r}")
    return round(market_price * formula.value / 100.0, 4)


def resolve_quantity(formula: Formula, symbol: str, snapshot: AccountSnapshot,
                     price: Optional[float] = None) -> float:
    """
    Resolve a quantity formula to a share count.

    Notional references (portfolio, equity, cash, buying_power) are converted
    to shares with the limit price when given, else the snapshot market price.
    """
    if formula.kind == "literal":
        return float(formula.value)
    if formula.kind != "percent":
        raise UnresolvedFormula(f"Cannot resolve quantity from {formula.source!r}")

    fraction = formula.value / 100.0
    if formula.reference == "position":
        held = snapshot.positions.get(symbol)
        if not held:
            raise UnresolvedFormula(f"No open position in {symbol} to resolve {formula.source!r}")
        quantity = abs(held) * fraction
    else:
        base = snapshot.reference_value(formula.reference)
        if base is None:
            raise UnresolvedFormula(f"Account snapshot has no {formula.reference} value")
        unit_price = price if price is not None else snapshot.price_for(symbol)
        if not unit_price or unit_price <= 0:
            raise UnresolvedFormula(f"No market price for {symbol} to size {formula.source!r}")
        quantity = base * fraction / unit_price

    factor = 10 ** _QUANTITY_DECIMALS
    quantity = math.floor(quantity * factor) / factor
    if quantity <= 0:
        raise UnresolvedFormula(f"{formula.source!r} resolves to zero shares of {symbol}")
    return quantity

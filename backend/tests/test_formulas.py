"""
Tests for quantity/price formula parsing and resolution.
"""
import pytest

from engine.errors import FormulaSyntaxError, UnresolvedFormula, ValidationError
from engine.formulas import parse_formula, resolve_price, resolve_quantity
from services.portfolio import AccountSnapshot


@pytest.fixture
def snapshot():
    return AccountSnapshot(
        equity=10000.0,
        cash=4000.0,
        buying_power=8000.0,
        positions={"AAPL": 30.0},
        prices={"AAPL": 100.0, "MSFT": 300.0},
    )


class TestParseFormula:

    def test_literal(self):
        formula = parse_formula("25", "quantity")
        assert formula.kind == "literal"
        assert formula.value == 25.0

    def test_percent_of_portfolio(self):
        formula = parse_formula("10% of portfolio", "quantity")
        assert formula.kind == "percent"
        assert formula.value == 10.0
        assert formula.reference == "portfolio"

    def test_reference_with_spaces(self):
        formula = parse_formula("50 % of Buying Power", "quantity")
        assert formula.reference == "buying_power"

    def test_market_price(self):
        assert parse_formula("market", "price").kind == "market"
        assert parse_formula("99% of market", "price").reference == "market"

    @pytest.mark.parametrize("text,field", [
        ("", "quantity"),
        ("-5", "quantity"),
        ("0", "price"),
        ("market", "quantity"),
        ("10% of market", "quantity"),
        ("10% of portfolio", "price"),
        ("150% of cash", "quantity"),
        ("ten shares", "quantity"),
        ("nan", "price"),
    ])
    def test_rejected(self, text, field):
        with pytest.raises(FormulaSyntaxError):
            parse_formula(text, field)

    def test_syntax_error_is_validation_error(self):
        with pytest.raises(ValidationError):
            parse_formula("lots", "quantity")


class TestResolve:

    def test_price_literal_and_market(self, snapshot):
        assert resolve_price(parse_formula("101.5", "price"), "AAPL", snapshot) == 101.5
        assert resolve_price(parse_formula("market", "price"), "AAPL", snapshot) is None
        assert resolve_price(None, "AAPL", snapshot) is None

    def test_price_percent_of_market(self, snapshot):
        assert resolve_price(parse_formula("99% of market", "price"), "AAPL", snapshot) == 99.0

    def test_price_percent_without_quote(self, snapshot):
        with pytest.raises(UnresolvedFormula):
            resolve_price(parse_formula("99% of market", "price"), "TSLA", snapshot)

    def test_quantity_percent_of_portfolio_uses_market_price(self, snapshot):
        quantity = resolve_quantity(parse_formula("10% of portfolio", "quantity"), "AAPL", snapshot)
        assert quantity == 10.0

    def test_quantity_uses_limit_price_when_given(self, snapshot):
        quantity = resolve_quantity(parse_formula("10% of cash", "quantity"), "AAPL", snapshot, price=80.0)
        assert quantity == 5.0

    def test_quantity_percent_of_position(self, snapshot):
        quantity = resolve_quantity(parse_formula("50% of position", "quantity"), "AAPL", snapshot)
        assert quantity == 15.0

    def test_quantity_is_floored(self, snapshot):
        quantity = resolve_quantity(parse_formula("1% of equity", "quantity"), "MSFT", snapshot)
        assert quantity == 0.3333

    def test_missing_position(self, snapshot):
        with pytest.raises(UnresolvedFormula):
            resolve_quantity(parse_formula("50% of position", "quantity"), "MSFT", snapshot)

    def test_missing_account_data(self):
        empty = AccountSnapshot(prices={"AAPL": 100.0})
        with pytest.raises(UnresolvedFormula):
            resolve_quantity(parse_formula("10% of portfolio", "quantity"), "AAPL", empty)

    def test_resolves_to_zero(self, snapshot):
        tiny = AccountSnapshot(cash=0.00001, prices={"AAPL": 100.0})
        with pytest.raises(UnresolvedFormula):
            resolve_quantity(parse_formula("1% of cash", "quantity"), "AAPL", tiny)

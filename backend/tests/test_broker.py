"""
Tests for the paper broker.
"""
import pytest

from services.broker import OrderSide, OrderType, PaperBroker


@pytest.fixture
def broker():
    paper = PaperBroker(starting_balance=1000.0)
    paper.connect()
    return paper


def test_static_and_pinned_prices(broker):
    assert broker.get_market_data("aapl")["price"] == 100.0
    broker.set_price("AAPL", 120.0)
    quote = broker.get_market_data("AAPL")
    assert quote["price"] == 120.0
    assert quote["bid"] < quote["price"] < quote["ask"]


def test_unknown_symbol_price_is_stable(broker):
    assert broker.get_market_data("ZZZ")["price"] == broker.get_market_data("ZZZ")["price"]


def test_market_buy_fills_and_moves_cash(broker):
    order = broker.submit_order("AAPL", OrderSide.BUY, OrderType.MARKET, 5)
    assert order["status"] == "filled"
    assert order["avg_fill_price"] == 100.0
    assert broker.positions["AAPL"]["quantity"] == 5
    account = broker.get_account_info()
    assert account["cash"] == 500.0
    assert account["equity"] == 1000.0


def test_average_entry_across_buys(broker):
    broker.submit_order("AAPL", OrderSide.BUY, OrderType.MARKET, 2)
    broker.set_price("AAPL", 130.0)
    broker.submit_order("AAPL", OrderSide.BUY, OrderType.MARKET, 2)
    assert broker.positions["AAPL"]["avg_entry_price"] == pytest.approx(115.0)


def test_non_marketable_limit_stays_pending(broker):
    order = broker.submit_order("AAPL", OrderSide.BUY, OrderType.LIMIT, 1, price=90.0)
    assert order["status"] == "pending"
    assert order["filled_quantity"] == 0.0
    assert broker.balance == 1000.0


def test_marketable_limit_fills_at_quote(broker):
    order = broker.submit_order("AAPL", OrderSide.BUY, OrderType.LIMIT, 1, price=105.0)
    assert order["status"] == "filled"
    assert order["avg_fill_price"] == 100.0


def test_insufficient_cash_rejected(broker):
    order = broker.submit_order("AAPL", OrderSide.BUY, OrderType.MARKET, 11)
    assert order["status"] == "rejected"
    assert "Insufficient cash" in order["reject_reason"]
    assert broker.positions == {}


def test_sell_beyond_position_rejected(broker):
    broker.submit_order("AAPL", OrderSide.BUY, OrderType.MARKET, 2)
    order = broker.submit_order("AAPL", OrderSide.SELL, OrderType.MARKET, 3)
    assert order["status"] == "rejected"
    assert broker.positions["AAPL"]["quantity"] == 2


def test_selling_whole_position_closes_it(broker):
    broker.submit_order("AAPL", OrderSide.BUY, OrderType.MARKET, 2)
    broker.set_price("AAPL", 110.0)
    broker.submit_order("AAPL", OrderSide.SELL, OrderType.MARKET, 2)
    assert broker.get_positions() == []
    assert broker.balance == pytest.approx(1020.0)


def test_order_ids_are_sequential(broker):
    first = broker.submit_order("AAPL", OrderSide.BUY, OrderType.MARKET, 1)
    second = broker.submit_order("AAPL", OrderSide.BUY, OrderType.MARKET, 1)
    assert (first["id"], second["id"]) == ("paper-1", "paper-2")

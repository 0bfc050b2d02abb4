"""
Tests for the action executor.
"""
import asyncio
import time
from unittest.mock import Mock

import pytest

from engine.actions import ActionExecutor
from engine.errors import (
    ActionRejected,
    ActionTimeout,
    ConfigValidationError,
    DeliveryFailed,
    FormulaSyntaxError,
    OrderOutcomeUnknown,
    UnresolvedFormula,
    is_retryable,
)
from services.notification_delivery import DeliveryResult
from services.order_execution import BrokerError, OrderValidationError, PlacedOrder
from services.portfolio import AccountSnapshot
from storage.models import ActionStatusEnum, ActionTypeEnum, WorkflowAction


def _action(action_type="buy", **kwargs):
    fields = dict(id=5, workflow_id=1, step_id=1, symbol="AAPL", quantity="10", is_enabled=True)
    fields.update(kwargs)
    return WorkflowAction(action_type=ActionTypeEnum(action_type), **fields)


@pytest.fixture
def snapshot():
    return AccountSnapshot(equity=10000.0, cash=10000.0, buying_power=10000.0, prices={"AAPL": 100.0})


@pytest.fixture
def order_service():
    service = Mock()
    service.place_order.return_value = PlacedOrder(order_id=42, status="filled")
    return service


@pytest.fixture
def notifier():
    service = Mock()
    service.send.return_value = DeliveryResult(delivered=True, detail="ok")
    return service


@pytest.fixture
def executor(order_service, notifier):
    return ActionExecutor(order_service, notifier, timeout_seconds=1.0)


def _execute(executor, action, snapshot):
    return asyncio.run(executor.execute(action, snapshot, workflow_id=1))


class TestOrderActions:

    def test_market_buy(self, executor, order_service, snapshot):
        action = _action()
        outcome = _execute(executor, action, snapshot)

        request = order_service.place_order.call_args[0][0]
        assert request.symbol == "AAPL"
        assert request.side == "buy"
        assert request.order_type == "market"
        assert request.quantity == 10.0
        assert request.price is None
        assert request.workflow_id == 1
        assert request.action_id == 5
        assert outcome.status == "success"
        assert outcome.order_id == 42
        assert action.execution_status == ActionStatusEnum.SUCCESS
        assert action.last_executed is not None

    def test_limit_sell_from_price_formula(self, executor, order_service, snapshot):
        action = _action("sell", price="99% of market", quantity="10% of portfolio",
                         additional_params={"time_in_force": "gtc"})
        _execute(executor, action, snapshot)

        request = order_service.place_order.call_args[0][0]
        assert request.order_type == "limit"
        assert request.price == 99.0
        assert request.quantity == 10.101
        assert request.time_in_force == "gtc"

    def test_explicit_market_ignores_price(self, executor, order_service, snapshot):
        _execute(executor, _action(price="95", order_type="market"), snapshot)
        request = order_service.place_order.call_args[0][0]
        assert request.order_type == "market"
        assert request.price is None

    def test_validation_failure_becomes_rejection(self, executor, order_service, snapshot):
        order_service.place_order.side_effect = OrderValidationError("Insufficient buying power")
        action = _action()
        with pytest.raises(ActionRejected):
            _execute(executor, action, snapshot)
        assert action.execution_status == ActionStatusEnum.FAILURE
        assert "Insufficient buying power" in action.error_message

    def test_broker_error_propagates(self, executor, order_service, snapshot):
        order_service.place_order.side_effect = BrokerError("Broker is not connected")
        with pytest.raises(BrokerError):
            _execute(executor, _action(), snapshot)

    def test_bad_formula(self, executor, order_service, snapshot):
        with pytest.raises(FormulaSyntaxError):
            _execute(executor, _action(quantity="a lot"), snapshot)
        order_service.place_order.assert_not_called()

    def test_unresolvable_formula(self, executor, order_service):
        with pytest.raises(UnresolvedFormula):
            _execute(executor, _action(quantity="10% of portfolio"), AccountSnapshot())
        order_service.place_order.assert_not_called()

    def test_missing_symbol(self, executor, snapshot):
        with pytest.raises(ConfigValidationError):
            _execute(executor, _action(symbol=None), snapshot)

    def test_slow_order_times_out(self, order_service, notifier, snapshot):
        def slow(_request):
            time.sleep(0.5)
            return PlacedOrder(order_id=1, status="filled")

        order_service.place_order.side_effect = slow
        executor = ActionExecutor(order_service, notifier, timeout_seconds=0.05)
        action = _action()
        with pytest.raises(OrderOutcomeUnknown) as excinfo:
            _execute(executor, action, snapshot)
        assert isinstance(excinfo.value, ActionTimeout)
        assert not is_retryable(excinfo.value)
        assert action.execution_status == ActionStatusEnum.FAILURE


class TestNotificationActions:

    def test_alert_default_message(self, executor, notifier, snapshot):
        outcome = _execute(executor, _action("alert", quantity=None), snapshot)
        channel, payload = notifier.send.call_args[0]
        assert channel == "alert"
        assert "Workflow 1 action 5" in payload.message
        assert outcome.message == "ok"

    def test_webhook_payload(self, executor, notifier, snapshot):
        action = _action("webhook", additional_params={
            "url": "https://hooks.example.com/x", "method": "PUT", "payload": {"k": "v"},
        })
        _execute(executor, action, snapshot)
        channel, payload = notifier.send.call_args[0]
        assert channel == "webhook"
        assert payload.recipient == "https://hooks.example.com/x"
        assert payload.method == "PUT"
        assert payload.data == {"k": "v"}

    def test_email_requires_recipient(self, executor, snapshot):
        with pytest.raises(ConfigValidationError):
            _execute(executor, _action("email", additional_params={}), snapshot)

    def test_undelivered_notification_fails(self, executor, notifier, snapshot):
        notifier.send.return_value = DeliveryResult(delivered=False, error="SMTP host is not configured")
        action = _action("email", additional_params={"recipient": "ops@example.com"})
        with pytest.raises(DeliveryFailed):
            _execute(executor, action, snapshot)
        assert action.error_message == "SMTP host is not configured"


class TestCustomActions:

    def test_registered_handler(self, executor, snapshot):
        calls = []

        def handler(action, arguments, snap):
            calls.append((action.id, arguments, snap.equity))
            return "rebalanced"

        executor.register_handler("rebalance", handler)
        outcome = _execute(executor, _action("custom", additional_params={
            "handler": "rebalance", "arguments": {"target": 0.5},
        }), snapshot)
        assert outcome.message == "rebalanced"
        assert calls == [(5, {"target": 0.5}, 10000.0)]

    def test_async_handler(self, executor, snapshot):
        async def handler(action, arguments, snap):
            return None

        executor.register_handler("noop", handler)
        outcome = _execute(executor, _action("custom", additional_params={"handler": "noop"}), snapshot)
        assert "noop" in outcome.message

    def test_unknown_handler(self, executor, snapshot):
        with pytest.raises(ConfigValidationError):
            _execute(executor, _action("custom", additional_params={"handler": "missing"}), snapshot)


def test_disabled_action_skipped(executor, order_service, snapshot):
    outcome = _execute(executor, _action(is_enabled=False), snapshot)
    assert outcome.status == "skipped"
    order_service.place_order.assert_not_called()

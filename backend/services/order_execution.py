"""
Order Execution Service.

Order subsystem used by workflow buy/sell actions: validation, broker
submission and persistence of the order with its broker outcome.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import logging
import threading
import time
from collections import deque

from sqlalchemy.orm import Session

from services.broker import BrokerInterface, OrderSide, OrderType
from storage.service import StorageService
from storage.models import OrderSideEnum, OrderTypeEnum, OrderStatusEnum, utc_now

logger = logging.getLogger(__name__)

# Process-wide trading halt; checked before every submission.
_kill_switch = threading.Event()

BROKER_STATUS_MAP: Dict[str, OrderStatusEnum] = {
    "pending": OrderStatusEnum.PENDING,
    "submitted": OrderStatusEnum.OPEN,
    "accepted": OrderStatusEnum.OPEN,
    "new": OrderStatusEnum.OPEN,
    "open": OrderStatusEnum.OPEN,
    "filled": OrderStatusEnum.FILLED,
    "partially_filled": OrderStatusEnum.PARTIALLY_FILLED,
    "partial_fill": OrderStatusEnum.PARTIALLY_FILLED,
    "cancelled": OrderStatusEnum.CANCELLED,
    "canceled": OrderStatusEnum.CANCELLED,
    "expired": OrderStatusEnum.CANCELLED,
    "rejected": OrderStatusEnum.REJECTED,
}


def set_global_kill_switch(active: bool) -> None:
    if active:
        _kill_switch.set()
    else:
        _kill_switch.clear()


def get_global_kill_switch() -> bool:
    return _kill_switch.is_set()


class OrderExecutionError(Exception):
    """Base class for order subsystem failures."""


class OrderValidationError(OrderExecutionError):
    """The order was refused before reaching the broker; nothing is stored."""


class BrokerError(OrderExecutionError):
    """The broker could not be consulted or refused the submission."""


class OrderRejected(OrderExecutionError):
    """The broker refused an order that is now stored as rejected."""

    def __init__(self, message: str, order_id: Optional[int] = None):
        super().__init__(message)
        self.order_id = order_id


@dataclass
class OrderRequest:
    """Fully resolved order as produced by a workflow action."""
    symbol: str
    side: str
    order_type: str
    quantity: float
    price: Optional[float] = None
    time_in_force: Optional[str] = None
    workflow_id: Optional[int] = None
    action_id: Optional[int] = None


@dataclass
class PlacedOrder:
    """Result of a successful submission."""
    order_id: int
    status: str
    external_id: Optional[str] = None
    filled_quantity: float = 0.0
    avg_fill_price: Optional[float] = None


class OrderThrottle:
    """At most `per_minute` acquisitions in any rolling 60 second window."""

    WINDOW_SECONDS = 60.0

    def __init__(self, per_minute: int, clock: Callable[[], float] = time.time):
        self.per_minute = max(1, int(per_minute))
        self._clock = clock
        self._stamps: deque = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        now = self._clock()
        with self._lock:
            while self._stamps and self._stamps[0] < now - self.WINDOW_SECONDS:
                self._stamps.popleft()
            if len(self._stamps) >= self.per_minute:
                return False
            self._stamps.append(now)
            return True


class OrderExecutionService:
    """
    Validates, submits and records orders.

    Every call opens its own session so submissions made from worker
    threads never share a session with the caller. The stored order and its
    broker outcome are committed together.
    """

    def __init__(
        self,
        broker: BrokerInterface,
        session_factory: Callable[[], Session],
        order_throttle_per_minute: int = 60,
    ):
        self.broker = broker
        self.session_factory = session_factory
        self.throttle = OrderThrottle(order_throttle_per_minute)

    @property
    def order_throttle_per_minute(self) -> int:
        return self.throttle.per_minute

    def validate_order(self, request: OrderRequest) -> None:
        """
        Check the order shape, the trading halt, the broker and, for buys,
        buying power.

        Raises:
            OrderValidationError: If validation fails
            BrokerError: If the broker cannot be reached
        """
        if request.side not in ("buy", "sell"):
            raise OrderValidationError(f"Unsupported order side: {request.side}")
        if request.order_type not in ("market", "limit"):
            raise OrderValidationError(f"Unsupported order type: {request.order_type}")
        if request.quantity <= 0:
            raise OrderValidationError("Order quantity must be positive")
        if request.order_type == "limit" and request.price is None:
            raise OrderValidationError("Price required for limit orders")
        if request.price is not None and request.price <= 0:
            raise OrderValidationError("Price must be positive")

        if get_global_kill_switch():
            raise OrderValidationError("Trading is blocked: kill switch is active")
        if not self.broker.is_connected():
            raise BrokerError("Broker is not connected")
        if not self.broker.is_symbol_tradable(request.symbol):
            raise OrderValidationError(f"Symbol {request.symbol} is not tradable")

        if request.side != "buy":
            return

        try:
            buying_power = float(self.broker.get_account_info().get("buying_power") or 0)
        except Exception as e:
            logger.error("Failed to get account info: %s", e)
            raise BrokerError(f"Failed to get account info: {e}") from e

        estimated_price = request.price or self._market_price(request.symbol)
        order_value = request.quantity * estimated_price
        if order_value > buying_power:
            raise OrderValidationError(
                f"Insufficient buying power: need ${order_value:.2f}, have ${buying_power:.2f}"
            )

    def _market_price(self, symbol: str) -> float:
        try:
            price = float(self.broker.get_market_data(symbol).get("price") or 0)
        except Exception as e:
            logger.warning("Failed to get market data for %s: %s", symbol, e)
            raise BrokerError(f"Failed to get market data for {symbol}: {e}") from e
        if price <= 0:
            raise OrderValidationError("Cannot validate market order without price data")
        return price

    def place_order(self, request: OrderRequest) -> PlacedOrder:
        """
        Submit an order for execution.

        A broker failure leaves a single order row in the rejected state plus
        an order_rejected audit entry.

        Returns:
            PlacedOrder with the stored order id and status

        Raises:
            OrderValidationError: If validation fails (nothing is persisted)
            BrokerError: If the broker is unreachable before submission
            OrderRejected: If the broker refused the order
        """
        request.symbol = request.symbol.strip().upper()
        if not self.throttle.try_acquire():
            raise OrderValidationError(
                f"Order throttle exceeded: max {self.order_throttle_per_minute} orders/minute"
            )
        self.validate_order(request)

        db = self.session_factory()
        try:
            storage = StorageService(db)
            order = storage.orders.create(
                symbol=request.symbol,
                side=OrderSideEnum(request.side),
                type=OrderTypeEnum(request.order_type),
                quantity=request.quantity,
                price=request.price,
                time_in_force=request.time_in_force,
                workflow_id=request.workflow_id,
                action_id=request.action_id,
                commit=False,
            )

            try:
                response = self._submit(request)
            except Exception as e:
                self._record_rejection(storage, order, request, str(e))
                raise OrderRejected(f"Order rejected by broker: {e}", order_id=order.id) from e

            order.external_id = response.get("id")
            order.status = self._map_broker_status(response.get("status"))
            filled_quantity = float(response.get("filled_quantity") or 0)
            if filled_quantity > 0:
                order.filled_quantity = filled_quantity
                order.avg_fill_price = response.get("avg_fill_price")
                if order.status == OrderStatusEnum.FILLED:
                    order.filled_at = utc_now()
            order = storage.orders.update(order)

            logger.info(
                "Order %s (external %s): %s %s %s @ %s -> %s",
                order.id, order.external_id, request.side, request.quantity, request.symbol,
                request.price or "market", order.status.value,
            )
            storage.create_audit_log(
                event_type="order_created",
                description=f"Order created: {request.side} {request.quantity} {request.symbol}",
                details={
                    "order_id": order.id,
                    "external_id": order.external_id,
                    "symbol": request.symbol,
                    "side": request.side,
                    "type": request.order_type,
                    "quantity": request.quantity,
                    "price": request.price,
                    "status": order.status.value,
                    "action_id": request.action_id,
                },
                workflow_id=request.workflow_id,
                order_id=order.id,
            )

            return PlacedOrder(
                order_id=order.id,
                status=order.status.value,
                external_id=order.external_id,
                filled_quantity=float(order.filled_quantity or 0),
                avg_fill_price=order.avg_fill_price,
            )
        finally:
            db.close()

    def _submit(self, request: OrderRequest) -> Dict[str, Any]:
        """Send the order to the broker; a broker-side rejection raises BrokerError."""
        response = self.broker.submit_order(
            symbol=request.symbol,
            side=OrderSide(request.side),
            order_type=OrderType(request.order_type),
            quantity=request.quantity,
            price=request.price,
            time_in_force=request.time_in_force,
        )
        if self._map_broker_status(response.get("status")) == OrderStatusEnum.REJECTED:
            raise BrokerError(response.get("reject_reason") or "Broker rejected the order")
        return response

    def _record_rejection(self, storage: StorageService, order: Any, request: OrderRequest, reason: str) -> None:
        order.status = OrderStatusEnum.REJECTED
        order.reject_reason = reason
        storage.orders.update(order)
        logger.error("Failed to submit order %s: %s", order.id, reason)
        storage.create_audit_log(
            event_type="order_rejected",
            description=f"Order rejected: {request.side} {request.quantity} {request.symbol}",
            details={"order_id": order.id, "reason": reason},
            workflow_id=request.workflow_id,
            order_id=order.id,
        )

    @staticmethod
    def _map_broker_status(broker_status: Any) -> OrderStatusEnum:
        """Unknown or missing broker statuses count as pending."""
        key = str(broker_status).lower() if broker_status else "pending"
        return BROKER_STATUS_MAP.get(key, OrderStatusEnum.PENDING)

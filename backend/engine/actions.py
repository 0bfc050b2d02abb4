"""
Action Executor.
Performs the side effect of a workflow action: order placement or notification.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from engine.configs import (
    AlertActionParams,
    CustomActionParams,
    EmailActionParams,
    OrderActionParams,
    SmsActionParams,
    WebhookActionParams,
    parse_action_params,
)
from engine.errors import (
    ActionRejected,
    ActionTimeout,
    ConfigValidationError,
    DeliveryFailed,
    OrderOutcomeUnknown,
)
from engine.formulas import parse_formula, resolve_price, resolve_quantity
from services.notification_delivery import (
    DeliveryResult,
    NotificationDeliveryService,
    NotificationPayload,
)
from services.order_execution import OrderExecutionService, OrderRequest, OrderValidationError
from services.portfolio import AccountSnapshot
from storage.models import ActionStatusEnum, ActionTypeEnum, WorkflowAction, utc_now

logger = logging.getLogger(__name__)

ORDER_ACTIONS = (ActionTypeEnum.BUY, ActionTypeEnum.SELL)

# handler(action, arguments, snapshot) -> optional message; may be sync or async
CustomHandler = Callable[[WorkflowAction, Dict[str, Any], AccountSnapshot], Any]


@dataclass
class ActionOutcome:
    """Result of one executed action."""
    action_id: Optional[int]
    status: str
    message: str
    order_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "status": self.status,
            "message": self.message,
            "order_id": self.order_id,
        }


class ActionExecutor:
    """
    Executes workflow actions.

    Every collaborator call is bounded by `timeout_seconds`. The executor
    never retries; failures are recorded on the action and raised to the
    step runner.
    """

    def __init__(
        self,
        order_service: OrderExecutionService,
        notifier: NotificationDeliveryService,
        timeout_seconds: float = 10.0,
        custom_handlers: Optional[Dict[str, CustomHandler]] = None,
    ):
        self.order_service = order_service
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds
        self.custom_handlers: Dict[str, CustomHandler] = dict(custom_handlers or {})

    def register_handler(self, name: str, handler: CustomHandler) -> None:
        """Register a handler for `custom` actions."""
        self.custom_handlers[name] = handler

    async def execute(self, action: WorkflowAction, snapshot: AccountSnapshot,
                      workflow_id: Optional[int] = None) -> ActionOutcome:
        """
        Execute one action against an account snapshot.

        Returns:
            ActionOutcome with status 'success', or 'skipped' for a disabled action

        Raises:
            ValidationError subclasses for misconfiguration or outright rejection,
            OrderOutcomeUnknown for a timed-out order submission (never retried),
            ActionTimeout / DeliveryFailed and order subsystem errors otherwise
        """
        if not action.is_enabled:
            return ActionOutcome(action_id=action.id, status="skipped", message="Action disabled")

        action_type = ActionTypeEnum(action.action_type)
        try:
            params = parse_action_params(action_type, action.additional_params)
            if action_type in ORDER_ACTIONS:
                outcome = await self._place_order(action, action_type, params, snapshot, workflow_id)
            elif action_type == ActionTypeEnum.CUSTOM:
                outcome = await self._run_custom(action, params, snapshot)
            else:
                outcome = await self._notify(action, action_type, params, workflow_id)
        except Exception as exc:
            action.last_executed = utc_now()
            action.execution_status = ActionStatusEnum.FAILURE
            action.error_message = str(exc)
            logger.warning("Action %s (%s) failed: %s", action.id, action_type.value, exc)
            raise

        action.last_executed = utc_now()
        action.execution_status = ActionStatusEnum.SUCCESS
        action.error_message = None
        logger.info("Action %s (%s) succeeded: %s", action.id, action_type.value, outcome.message)
        return outcome

    async def send_notification(self, channel: str, payload: NotificationPayload) -> str:
        """Deliver a notification; raises DeliveryFailed when not delivered."""
        result: DeliveryResult = await self._call(self.notifier.send, channel, payload, what=f"{channel} delivery")
        if not result.delivered:
            raise DeliveryFailed(result.error or f"{channel} delivery failed")
        return result.detail or f"{channel} delivered"

    async def _place_order(self, action: WorkflowAction, action_type: ActionTypeEnum,
                           params: OrderActionParams, snapshot: AccountSnapshot,
                           workflow_id: Optional[int]) -> ActionOutcome:
        symbol = (action.symbol or "").strip().upper()
        if not symbol:
            raise ConfigValidationError(f"{action_type.value} action {action.id} has no symbol")
        if not action.quantity:
            raise ConfigValidationError(f"{action_type.value} action {action.id} has no quantity")

        price_formula = parse_formula(action.price, "price") if action.price else None
        quantity_formula = parse_formula(action.quantity, "quantity")

        order_type = (action.order_type or "").strip().lower()
        price = None if order_type == "market" else resolve_price(price_formula, symbol, snapshot)
        if not order_type:
            order_type = "limit" if price is not None else "market"
        quantity = resolve_quantity(quantity_formula, symbol, snapshot, price=price)

        request = OrderRequest(
            symbol=symbol,
            side=action_type.value,
            order_type=order_type,
            quantity=quantity,
            price=price,
            time_in_force=params.time_in_force or action.duration,
            workflow_id=workflow_id,
            action_id=action.id,
        )
        try:
            placed = await self._call(self.order_service.place_order, request, what=f"order for {symbol}")
        except OrderValidationError as exc:
            raise ActionRejected(f"Order rejected before submission: {exc}") from exc
        except ActionTimeout as exc:
            # The worker thread keeps going and may still place the order.
            raise OrderOutcomeUnknown(
                f"{exc}; order for action {action.id} may still be placed, not retrying"
            ) from exc

        return ActionOutcome(
            action_id=action.id,
            status="success",
            message=f"{action_type.value} {quantity:g} {symbol} @ {price if price is not None else 'market'} ({placed.status})",
            order_id=placed.order_id,
        )

    async def _notify(self, action: WorkflowAction, action_type: ActionTypeEnum,
                      params: Any, workflow_id: Optional[int]) -> ActionOutcome:
        default_message = f"Workflow {workflow_id} action {action.id} triggered"
        if action.symbol:
            default_message += f" for {action.symbol}"

        if isinstance(params, WebhookActionParams):
            payload = NotificationPayload(
                message=default_message,
                recipient=params.url,
                method=params.method,
                headers=params.headers,
                data=params.payload,
                workflow_id=workflow_id,
            )
        elif isinstance(params, (EmailActionParams, SmsActionParams)):
            payload = NotificationPayload(
                message=params.message or default_message,
                recipient=params.recipient,
                subject=getattr(params, "subject", None),
                workflow_id=workflow_id,
            )
        elif isinstance(params, AlertActionParams):
            payload = NotificationPayload(message=params.message or default_message, workflow_id=workflow_id)
        else:
            raise ConfigValidationError(f"No notification channel for action type {action_type.value}")

        detail = await self.send_notification(action_type.value, payload)
        return ActionOutcome(action_id=action.id, status="success", message=detail)

    async def _run_custom(self, action: WorkflowAction, params: CustomActionParams,
                          snapshot: AccountSnapshot) -> ActionOutcome:
        handler = self.custom_handlers.get(params.handler)
        if handler is None:
            raise ConfigValidationError(f"No custom handler registered as {params.handler!r}")
        result = await self._call(handler, action, params.arguments, snapshot, what=f"custom handler {params.handler}")
        message = str(result) if result is not None else f"Custom handler {params.handler} completed"
        return ActionOutcome(action_id=action.id, status="success", message=message)

    async def _call(self, fn: Callable[..., Any], *args: Any, what: str) -> Any:
        """Run a collaborator call under the timeout; sync callables go to a worker thread."""
        if inspect.iscoroutinefunction(fn):
            awaitable: Awaitable[Any] = fn(*args)
        else:
            awaitable = asyncio.to_thread(fn, *args)
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ActionTimeout(f"{what} timed out after {self.timeout_seconds:g}s") from exc

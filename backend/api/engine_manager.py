"""
Workflow Engine Manager - Singleton instance owning the engine and its collaborators.
"""
from typing import Callable, Optional, Dict, Any
import threading
import logging

from sqlalchemy.orm import Session

from config.settings import get_settings
from engine.actions import ActionExecutor, CustomHandler
from engine.conditions import ConditionEvaluator
from engine.run_registry import WorkflowRunRegistry
from engine.step_runner import StepRunner
from engine.workflow_engine import WorkflowEngine
from services.broker import BrokerInterface, PaperBroker
from services.market_data import BrokerMarketDataProvider, MarketDataProvider
from services.notification_delivery import NotificationDeliveryService
from services.order_execution import OrderExecutionService
from storage.database import SessionLocal

logger = logging.getLogger(__name__)


class EngineManager:
    """
    Singleton manager for the workflow engine.

    Builds the broker, market data provider, order and notification services
    and the engine on first use. Collaborators can be swapped before the
    engine is built (or after `reset()`), which is how tests inject fakes.
    """

    _instance: Optional['EngineManager'] = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize the engine manager (only once)."""
        if self._initialized:
            return
        self._state_lock = threading.RLock()
        self._engine: Optional[WorkflowEngine] = None
        self._broker: Optional[BrokerInterface] = None
        self._market_data: Optional[MarketDataProvider] = None
        self._session_factory: Callable[[], Session] = SessionLocal
        self._custom_handlers: Dict[str, CustomHandler] = {}
        self._initialized = True

    def configure(
        self,
        broker: Optional[BrokerInterface] = None,
        market_data: Optional[MarketDataProvider] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ) -> None:
        """Replace collaborators; the engine is rebuilt on next use."""
        with self._state_lock:
            if broker is not None:
                self._broker = broker
            if market_data is not None:
                self._market_data = market_data
            if session_factory is not None:
                self._session_factory = session_factory
            self._engine = None

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory

    def register_custom_handler(self, name: str, handler: CustomHandler) -> None:
        with self._state_lock:
            self._custom_handlers[name] = handler
            if self._engine is not None:
                self._engine.step_runner.executor.register_handler(name, handler)

    def get_broker(self) -> BrokerInterface:
        """Get or create the broker instance (paper broker by default)."""
        with self._state_lock:
            if self._broker is None:
                broker = PaperBroker(starting_balance=get_settings().paper_starting_balance)
                if not broker.connect():
                    raise RuntimeError("Failed to connect to broker")
                self._broker = broker
            return self._broker

    def get_engine(self) -> WorkflowEngine:
        """Get or build the workflow engine."""
        with self._state_lock:
            if self._engine is None:
                self._engine = self._build()
            return self._engine

    def _build(self) -> WorkflowEngine:
        settings = get_settings()
        broker = self.get_broker()
        market_data = self._market_data or BrokerMarketDataProvider(
            broker, history_size=settings.workflow_market_history_size
        )
        timeout = settings.workflow_action_timeout_seconds

        evaluator = ConditionEvaluator(market_data, timeout_seconds=timeout)
        executor = ActionExecutor(
            order_service=OrderExecutionService(
                broker,
                session_factory=self._session_factory,
                order_throttle_per_minute=settings.order_throttle_per_minute,
            ),
            notifier=NotificationDeliveryService(settings=settings, session_factory=self._session_factory),
            timeout_seconds=timeout,
            custom_handlers=self._custom_handlers,
        )
        step_runner = StepRunner(evaluator, executor, max_delay_seconds=settings.workflow_max_delay_seconds)
        logger.info(
            "Workflow engine built (max_concurrent_runs=%d, busy_policy=%s)",
            settings.workflow_max_concurrent_runs, settings.workflow_busy_policy,
        )
        return WorkflowEngine(
            session_factory=self._session_factory,
            step_runner=step_runner,
            broker=broker,
            registry=WorkflowRunRegistry(settings.workflow_max_concurrent_runs),
            busy_policy=settings.workflow_busy_policy,
            allow_manual_run_when_paused=settings.workflow_allow_manual_run_when_paused,
            log_history_limit=settings.workflow_log_history_limit,
            snapshot_timeout_seconds=timeout,
        )

    def get_status(self) -> Dict[str, Any]:
        with self._state_lock:
            engine = self._engine
            broker = self._broker
        return {
            "built": engine is not None,
            "active_runs": engine.registry.active_runs() if engine else 0,
            "busy_policy": engine.busy_policy if engine else get_settings().workflow_busy_policy,
            "broker_connected": bool(broker.is_connected()) if broker else False,
        }

    def reset(self) -> None:
        """Drop every collaborator; used by tests and shutdown."""
        with self._state_lock:
            if self._broker is not None:
                self._broker.disconnect()
            self._engine = None
            self._broker = None
            self._market_data = None
            self._session_factory = SessionLocal
            self._custom_handlers = {}


# Global singleton instance
engine_manager = EngineManager()

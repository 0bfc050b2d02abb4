"""
Tests for the workflow engine: run bookkeeping, step ordering, early stop,
retries, per-workflow serialization, status transitions and pre-run failures.
"""
import asyncio
import logging
import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from engine.actions import ActionExecutor, ActionOutcome
from engine.conditions import ConditionEvaluator
from engine.errors import (
    ConfigValidationError,
    DataUnavailable,
    InvalidStatusTransition,
    WorkflowNotFound,
)
from engine.run_registry import WorkflowRunRegistry
from engine.step_runner import StepRunner
from engine.workflow_engine import WorkflowEngine
from services.broker import PaperBroker
from services.market_data import StaticMarketDataProvider
from services.notification_delivery import NotificationDeliveryService
from services.order_execution import OrderExecutionService
from storage.database import Base
from storage.models import ExecutionStatusEnum, OrderStatusEnum, WorkflowStatusEnum
from storage.service import StorageService


class ScriptedExecutor:
    """Executor double: records action calls and raises scripted errors."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    async def execute(self, action, snapshot, workflow_id=None):
        if not action.is_enabled:
            return ActionOutcome(action_id=action.id, status="skipped", message="Action disabled")
        self.calls.append(action.id)
        error = self.failures.get(action.id)
        if error is not None:
            raise error
        return ActionOutcome(action_id=action.id, status="success", message="done")

    async def send_notification(self, channel, payload):
        return f"{channel} delivered"


class SlowPaperBroker(PaperBroker):
    """Paper broker whose order submission takes `delay` seconds."""

    def __init__(self, delay, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay
        self.submissions = 0

    def submit_order(self, *args, **kwargs):
        self.submissions += 1
        time.sleep(self.delay)
        return super().submit_order(*args, **kwargs)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'engine.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def market():
    return StaticMarketDataProvider({("AAPL", "price"): [100.0]})


@pytest.fixture
def executor():
    return ScriptedExecutor()


def _build_engine(session_factory, market, executor, sleep=None, **kwargs):
    runner_kwargs = {"sleep": sleep} if sleep is not None else {}
    step_runner = StepRunner(ConditionEvaluator(market), executor, **runner_kwargs)
    return WorkflowEngine(session_factory=session_factory, step_runner=step_runner, **kwargs)


@pytest.fixture
def engine(session_factory, market, executor):
    return _build_engine(session_factory, market, executor)


def _no_sleep():
    async def sleep(_seconds):
        return None
    return sleep


def _create_workflow(session_factory, status=WorkflowStatusEnum.ACTIVE, **kwargs):
    db = session_factory()
    try:
        storage = StorageService(db)
        workflow = storage.create_workflow(user_id=1, name=kwargs.pop("name", "Workflow"), **kwargs)
        workflow.status = status
        storage.workflows.update(workflow)
        return workflow.id
    finally:
        db.close()


def _with_storage(session_factory, fn):
    db = session_factory()
    try:
        return fn(StorageService(db))
    finally:
        db.close()


def _add_action_step(session_factory, workflow_id, order, name="Act", max_retries=0,
                     actions=1, is_enabled=True):
    def build(storage):
        step = storage.add_step(workflow_id, "action", order, name, {}, max_retries=max_retries,
                                is_enabled=is_enabled)
        action_ids = [storage.add_action(workflow_id, step.id, "alert").id for _ in range(actions)]
        return step.id, action_ids
    return _with_storage(session_factory, build)


def _workflow_state(session_factory, workflow_id):
    def read(storage):
        workflow = storage.get_workflow(workflow_id)
        return {
            "status": workflow.status,
            "execution_count": workflow.execution_count,
            "last_executed_at": workflow.last_executed_at,
            "log_history": list(workflow.log_history or []),
        }
    return _with_storage(session_factory, read)


def _run(engine, workflow_id, trigger="manual"):
    return asyncio.run(engine.run(workflow_id, triggered_by=trigger))


class TestRunBookkeeping:

    def test_execution_count_increments_for_success_and_failure(self, session_factory, market):
        wid = _create_workflow(session_factory)
        _, (action_id,) = _add_action_step(session_factory, wid, 0)
        executor = ScriptedExecutor()
        engine = _build_engine(session_factory, market, executor)

        assert _run(engine, wid).status == ExecutionStatusEnum.COMPLETED
        executor.failures[action_id] = DataUnavailable("feed down")
        assert _run(engine, wid).status == ExecutionStatusEnum.FAILED
        assert _run(engine, wid, "event").status == ExecutionStatusEnum.FAILED

        state = _workflow_state(session_factory, wid)
        assert state["execution_count"] == 3
        assert state["last_executed_at"] is not None

    def test_log_history_records_runs(self, session_factory, market, executor):
        wid = _create_workflow(session_factory)
        _add_action_step(session_factory, wid, 0)
        engine = _build_engine(session_factory, market, executor, log_history_limit=2)

        logs = [_run(engine, wid) for _ in range(3)]
        history = _workflow_state(session_factory, wid)["log_history"]
        assert [entry["log_id"] for entry in history] == [logs[1].id, logs[2].id]
        assert history[-1]["status"] == "completed"
        assert history[-1]["triggered_by"] == "manual"

    def test_log_is_terminal_with_end_time(self, session_factory, engine):
        wid = _create_workflow(session_factory)
        _add_action_step(session_factory, wid, 0)
        log = _run(engine, wid)
        assert log.execution_end_time is not None
        assert log.execution_end_time >= log.execution_start_time
        assert log.details["triggered_by"] == "manual"
        assert _with_storage(session_factory, lambda s: s.execution_logs.count(wid)) == 1

    def test_cancelled_run_leaves_failed_log(self, session_factory, engine):
        wid = _create_workflow(session_factory)
        _with_storage(session_factory, lambda s: s.add_step(wid, "delay", 0, "Wait", {"seconds": 5}))

        async def cancel_mid_run():
            task = asyncio.ensure_future(engine.run(wid))
            await asyncio.sleep(0.2)
            task.cancel()
            await task

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(cancel_mid_run())

        logs = _with_storage(session_factory, lambda s: [
            (log.status, log.execution_end_time, log.details) for log in s.execution_logs.get_by_workflow(wid)
        ])
        assert len(logs) == 1
        status, ended_at, details = logs[0]
        assert status == ExecutionStatusEnum.FAILED
        assert ended_at is not None
        assert details["reason"] == "cancelled"
        state = _workflow_state(session_factory, wid)
        assert state["execution_count"] == 1
        assert state["log_history"][-1]["status"] == "failed"
        assert engine.registry.active_runs() == 0

    def test_empty_workflow_completes(self, session_factory, engine):
        wid = _create_workflow(session_factory)
        log = _run(engine, wid)
        assert log.status == ExecutionStatusEnum.COMPLETED
        assert log.details["steps"] == []


class TestStepOrdering:

    def test_steps_run_by_order_then_id(self, session_factory, engine, executor):
        wid = _create_workflow(session_factory)
        step_a, (action_a,) = _add_action_step(session_factory, wid, 2, "A")
        step_b, (action_b,) = _add_action_step(session_factory, wid, 1, "B")
        step_c, (action_c,) = _add_action_step(session_factory, wid, 1, "C")

        log = _run(engine, wid)
        assert [s["step_id"] for s in log.details["steps"]] == [step_b, step_c, step_a]
        assert executor.calls == [action_b, action_c, action_a]


class TestConditionGate:

    def test_false_condition_stops_run_as_completed(self, session_factory, engine, executor):
        wid = _create_workflow(session_factory)

        def build(storage):
            condition = storage.add_condition(wid, "price", "AAPL", ">", "1000000")
            return storage.add_step(wid, "condition", 0, "Gate", {"condition_ids": [condition.id]}).id

        gate_id = _with_storage(session_factory, build)
        _add_action_step(session_factory, wid, 1)

        log = _run(engine, wid)
        assert log.status == ExecutionStatusEnum.COMPLETED
        assert log.error_message is None
        assert log.details["stopped_early"] is True
        assert log.details["stopped_at_step_id"] == gate_id
        assert executor.calls == []
        assert _workflow_state(session_factory, wid)["execution_count"] == 1

    def test_true_condition_continues(self, session_factory, engine, executor):
        wid = _create_workflow(session_factory)

        def build(storage):
            condition = storage.add_condition(wid, "price", "AAPL", "<", "1000000")
            storage.add_step(wid, "condition", 0, "Gate", {"condition_ids": [condition.id]})

        _with_storage(session_factory, build)
        _, (action_id,) = _add_action_step(session_factory, wid, 1)

        log = _run(engine, wid)
        assert log.status == ExecutionStatusEnum.COMPLETED
        assert log.details["stopped_early"] is False
        assert executor.calls == [action_id]


class TestRetries:

    def test_failing_action_attempted_max_retries_plus_one(self, session_factory, market):
        wid = _create_workflow(session_factory)
        step_id, (action_id,) = _add_action_step(session_factory, wid, 0, max_retries=2)
        _, (later_action,) = _add_action_step(session_factory, wid, 1)
        executor = ScriptedExecutor({action_id: DataUnavailable("feed down")})
        engine = _build_engine(session_factory, market, executor)

        log = _run(engine, wid)
        assert executor.calls == [action_id, action_id, action_id]
        assert log.status == ExecutionStatusEnum.FAILED
        assert log.details["failed_step_id"] == step_id
        assert "DataUnavailable" in log.error_message
        assert later_action not in executor.calls

    def test_action_timeout_fails_run(self, session_factory, market):
        wid = _create_workflow(session_factory)

        def build(storage):
            step = storage.add_step(wid, "action", 0, "Slow", {})
            storage.add_action(wid, step.id, "custom", additional_params={"handler": "slow"})

        _with_storage(session_factory, build)

        async def slow(_action, _arguments, _snapshot):
            await asyncio.sleep(1)

        executor = ActionExecutor(order_service=None, notifier=None, timeout_seconds=0.05,
                                  custom_handlers={"slow": slow})
        engine = _build_engine(session_factory, market, executor)

        log = _run(engine, wid)
        assert log.status == ExecutionStatusEnum.FAILED
        assert "ActionTimeout" in log.error_message

    def test_timed_out_order_is_not_resubmitted(self, session_factory, market):
        broker = SlowPaperBroker(delay=0.3, starting_balance=10000.0)
        broker.connect()
        executor = ActionExecutor(
            order_service=OrderExecutionService(broker, session_factory=session_factory),
            notifier=NotificationDeliveryService(session_factory=session_factory),
            timeout_seconds=0.1,
        )
        wid = _create_workflow(session_factory)

        def build(storage):
            step = storage.add_step(wid, "action", 0, "Buy", {}, max_retries=1)
            storage.add_action(wid, step.id, "buy", symbol="AAPL", quantity="1")

        _with_storage(session_factory, build)
        engine = _build_engine(session_factory, market, executor, broker=broker)

        # asyncio.run waits for the worker thread, so the late submission has landed.
        log = _run(engine, wid)
        assert log.status == ExecutionStatusEnum.FAILED
        assert "OrderOutcomeUnknown" in log.error_message
        assert broker.submissions == 1
        assert broker.positions["AAPL"]["quantity"] == 1.0
        orders = _with_storage(session_factory, lambda s: s.orders.get_by_workflow(wid))
        assert len(orders) == 1


class TestDisabledParts:

    def test_disabled_step_never_runs(self, session_factory, engine, executor):
        wid = _create_workflow(session_factory)
        _add_action_step(session_factory, wid, 0, is_enabled=False)

        log = _run(engine, wid)
        assert executor.calls == []
        assert log.details["steps"][0]["status"] == "skipped"

    def test_disabled_condition_never_evaluated(self, session_factory, executor):
        class CountingMarket(StaticMarketDataProvider):
            calls = 0

            def get_metric(self, *args, **kwargs):
                CountingMarket.calls += 1
                return super().get_metric(*args, **kwargs)

        wid = _create_workflow(session_factory)

        def build(storage):
            condition = storage.add_condition(wid, "price", "AAPL", ">", "1", is_enabled=False)
            storage.add_step(wid, "condition", 0, "Gate", {"condition_ids": [condition.id]})

        _with_storage(session_factory, build)
        engine = _build_engine(session_factory, CountingMarket({("AAPL", "price"): [5.0]}), executor)

        log = _run(engine, wid)
        assert CountingMarket.calls == 0
        assert log.status == ExecutionStatusEnum.COMPLETED
        assert log.details["steps"][0]["status"] == "skipped"


class TestSerialization:

    def _workflow_with_pause(self, session_factory):
        wid = _create_workflow(session_factory)
        _, (first,) = _add_action_step(session_factory, wid, 0)
        _with_storage(session_factory, lambda s: s.add_step(wid, "delay", 1, "Wait", {"seconds": 0.05}))
        _, (second,) = _add_action_step(session_factory, wid, 2)
        return wid, first, second

    def test_concurrent_runs_queue(self, session_factory, market, executor):
        wid, first, second = self._workflow_with_pause(session_factory)
        engine = _build_engine(session_factory, market, executor)

        async def both():
            return await asyncio.gather(engine.run(wid), engine.run(wid))

        log_a, log_b = asyncio.run(both())
        assert executor.calls == [first, second, first, second]
        assert log_a.status == log_b.status == ExecutionStatusEnum.COMPLETED
        earlier, later = sorted((log_a, log_b), key=lambda log: log.id)
        assert earlier.execution_end_time <= later.execution_start_time
        assert _workflow_state(session_factory, wid)["execution_count"] == 2

    def test_concurrent_runs_reject(self, session_factory, market, executor):
        wid, first, second = self._workflow_with_pause(session_factory)
        engine = _build_engine(session_factory, market, executor, busy_policy="reject")

        async def both():
            return await asyncio.gather(engine.run(wid), engine.run(wid))

        log_a, log_b = asyncio.run(both())
        assert log_a.status == ExecutionStatusEnum.COMPLETED
        assert log_b.status == ExecutionStatusEnum.FAILED
        assert log_b.details["reason"] == "RunRejected"
        assert executor.calls == [first, second]
        assert _workflow_state(session_factory, wid)["execution_count"] == 1
        rejected = _with_storage(session_factory, lambda s: s.get_audit_logs(event_type="workflow_run_rejected"))
        assert len(rejected) == 1

    def test_different_workflows_run_concurrently(self, session_factory, market, executor):
        wid_a, _, _ = self._workflow_with_pause(session_factory)
        wid_b, _, _ = self._workflow_with_pause(session_factory)
        engine = _build_engine(session_factory, market, executor,
                               registry=WorkflowRunRegistry(max_concurrent_runs=4))

        logs = asyncio.run(engine.run_many([wid_a, wid_b], triggered_by="event"))
        assert [log.workflow_id for log in logs] == [wid_a, wid_b]
        assert all(log.status == ExecutionStatusEnum.COMPLETED for log in logs)
        assert engine.registry.active_runs() == 0

    def test_registry_warns_when_a_new_loop_drops_tracked_runs(self, caplog):
        registry = WorkflowRunRegistry()
        first_loop = asyncio.new_event_loop()
        held = registry.acquire(1)
        try:
            first_loop.run_until_complete(held.__aenter__())
            assert registry.is_busy(1)

            async def other():
                async with registry.acquire(2):
                    return registry.is_busy(1)

            with caplog.at_level(logging.WARNING, logger="engine.run_registry"):
                assert asyncio.run(other()) is False
            assert "new event loop" in caplog.text
            first_loop.run_until_complete(held.__aexit__(None, None, None))
        finally:
            first_loop.close()


class TestDeterminism:

    def test_same_outcomes_reproduce_same_details(self, session_factory, market):
        wid = _create_workflow(session_factory)

        def build(storage):
            condition = storage.add_condition(wid, "price", "AAPL", ">=", "100")
            storage.add_step(wid, "condition", 0, "Gate", {"condition_ids": [condition.id]})

        _with_storage(session_factory, build)
        _, (ok_action,) = _add_action_step(session_factory, wid, 1)
        _, (bad_action,) = _add_action_step(session_factory, wid, 2, max_retries=1)

        def shape(log):
            return log.status, [(s["step_id"], s["status"], s["attempts"], s["error_type"])
                                for s in log.details["steps"]]

        shapes = []
        for _ in range(2):
            executor = ScriptedExecutor({bad_action: DataUnavailable("scripted")})
            engine = _build_engine(session_factory, market, executor)
            shapes.append(shape(_run(engine, wid)))

        assert shapes[0] == shapes[1]
        assert shapes[0][0] == ExecutionStatusEnum.FAILED


class TestRunnability:

    def test_unknown_workflow_gets_failed_log(self, engine):
        log = _run(engine, 999)
        assert log.status == ExecutionStatusEnum.FAILED
        assert log.workflow_id == 999
        assert log.details["reason"] == "WorkflowNotFound"

    @pytest.mark.parametrize("status", [WorkflowStatusEnum.INACTIVE, WorkflowStatusEnum.ARCHIVED])
    def test_not_runnable_status(self, session_factory, engine, executor, status):
        wid = _create_workflow(session_factory, status=status)
        _add_action_step(session_factory, wid, 0)

        log = _run(engine, wid)
        assert log.status == ExecutionStatusEnum.FAILED
        assert log.details["reason"] == "WorkflowNotRunnable"
        assert executor.calls == []
        assert _workflow_state(session_factory, wid)["execution_count"] == 0

    def test_paused_workflow_manual_only(self, session_factory, engine, executor):
        wid = _create_workflow(session_factory, status=WorkflowStatusEnum.PAUSED)
        _add_action_step(session_factory, wid, 0)

        assert _run(engine, wid, "schedule").status == ExecutionStatusEnum.FAILED
        assert _run(engine, wid, "manual").status == ExecutionStatusEnum.COMPLETED
        assert _workflow_state(session_factory, wid)["execution_count"] == 1

    def test_paused_manual_run_can_be_disabled(self, session_factory, market, executor):
        wid = _create_workflow(session_factory, status=WorkflowStatusEnum.PAUSED)
        engine = _build_engine(session_factory, market, executor, allow_manual_run_when_paused=False)
        assert _run(engine, wid, "manual").status == ExecutionStatusEnum.FAILED

    def test_unknown_trigger(self, session_factory, engine):
        wid = _create_workflow(session_factory)
        with pytest.raises(ConfigValidationError):
            _run(engine, wid, "cron")

    def test_status_change_during_run_is_kept(self, session_factory, market, executor):
        wid = _create_workflow(session_factory)
        _with_storage(session_factory, lambda s: s.add_step(wid, "delay", 0, "Wait", {"seconds": 1}))
        holder = {}

        async def pausing_sleep(_seconds):
            holder["engine"].pause(wid)

        engine = _build_engine(session_factory, market, executor, sleep=pausing_sleep)
        holder["engine"] = engine

        log = _run(engine, wid)
        assert log.status == ExecutionStatusEnum.COMPLETED
        state = _workflow_state(session_factory, wid)
        assert state["status"] == WorkflowStatusEnum.PAUSED
        assert state["execution_count"] == 1

    def test_run_automatic(self, session_factory, engine):
        auto = _create_workflow(session_factory, name="Auto", is_automatic=True)
        _create_workflow(session_factory, name="Manual")
        _create_workflow(session_factory, name="Auto paused", is_automatic=True,
                         status=WorkflowStatusEnum.PAUSED)

        logs = asyncio.run(engine.run_automatic())
        assert [log.workflow_id for log in logs] == [auto]
        assert logs[0].triggered_by.value == "schedule"


class TestStatusTransitions:

    def test_lifecycle(self, session_factory, engine):
        wid = _create_workflow(session_factory, status=WorkflowStatusEnum.INACTIVE)
        assert engine.activate(wid).status == WorkflowStatusEnum.ACTIVE
        assert engine.pause(wid).status == WorkflowStatusEnum.PAUSED
        assert engine.activate(wid).status == WorkflowStatusEnum.ACTIVE
        assert engine.deactivate(wid).status == WorkflowStatusEnum.INACTIVE
        assert engine.archive(wid).status == WorkflowStatusEnum.ARCHIVED

        changes = _with_storage(session_factory, lambda s: s.get_audit_logs(event_type="workflow_status_changed"))
        assert len(changes) == 5

    def test_invalid_transitions(self, session_factory, engine):
        wid = _create_workflow(session_factory, status=WorkflowStatusEnum.INACTIVE)
        with pytest.raises(InvalidStatusTransition):
            engine.pause(wid)
        engine.archive(wid)
        with pytest.raises(InvalidStatusTransition):
            engine.activate(wid)

    def test_unknown_workflow(self, engine):
        with pytest.raises(WorkflowNotFound):
            engine.activate(12345)


class TestEndToEnd:

    def test_buy_order_placed_through_paper_broker(self, session_factory, market):
        broker = PaperBroker(starting_balance=10000.0)
        broker.connect()
        executor = ActionExecutor(
            order_service=OrderExecutionService(broker, session_factory=session_factory),
            notifier=NotificationDeliveryService(session_factory=session_factory),
            timeout_seconds=5.0,
        )
        wid = _create_workflow(session_factory)

        def build(storage):
            condition = storage.add_condition(wid, "price", "AAPL", ">=", "100")
            storage.add_step(wid, "condition", 0, "Gate", {"condition_ids": [condition.id]})
            step = storage.add_step(wid, "action", 1, "Buy", {})
            buy = storage.add_action(wid, step.id, "buy", symbol="AAPL", quantity="10% of portfolio")
            storage.add_action(wid, step.id, "alert", additional_params={"message": "Bought AAPL"})
            return buy.id

        buy_id = _with_storage(session_factory, build)
        engine = _build_engine(session_factory, market, executor, broker=broker, sleep=_no_sleep())

        log = _run(engine, wid)
        assert log.status == ExecutionStatusEnum.COMPLETED

        def check(storage):
            orders = storage.orders.get_by_workflow(wid)
            assert len(orders) == 1
            assert orders[0].action_id == buy_id
            assert orders[0].quantity == 10.0
            assert orders[0].status == OrderStatusEnum.FILLED
            action = storage.actions.get_by_id(buy_id)
            assert action.execution_status.value == "success"
            assert storage.get_audit_logs(event_type="notification_sent")

        _with_storage(session_factory, check)
        assert broker.positions["AAPL"]["quantity"] == 10.0

"""
Tests for storage layer - CRUD operations.
Tests database models, repositories, and storage service.
"""
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storage.database import Base
from storage.models import (
    WorkflowStatusEnum, StepTypeEnum, ExecutionStatusEnum, TriggerSourceEnum,
    OrderSideEnum, OrderTypeEnum, OrderStatusEnum, AuditEventTypeEnum,
)
from storage.repositories import ExecutionLogRepository, OrderRepository
from storage.service import StorageService


# Test fixtures

@pytest.fixture
def db_session():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def storage_service(db_session):
    """Create a storage service."""
    return StorageService(db_session)


@pytest.fixture
def workflow(storage_service):
    return storage_service.create_workflow(user_id=1, name="Dip buyer", description="Buy dips")


# Workflow tests

class TestWorkflowRepository:
    """Test workflow repository operations."""

    def test_create_workflow_starts_inactive(self, workflow):
        assert workflow.id is not None
        assert workflow.status == WorkflowStatusEnum.INACTIVE
        assert workflow.execution_count == 0
        assert workflow.log_history == []
        assert workflow.last_executed_at is None

    def test_create_workflow_writes_audit_entry(self, storage_service, workflow):
        logs = storage_service.get_audit_logs(event_type="workflow_created")
        assert len(logs) == 1
        assert logs[0].workflow_id == workflow.id

    def test_get_automatic_only_returns_active_flagged(self, storage_service):
        manual = storage_service.create_workflow(user_id=1, name="Manual")
        auto_inactive = storage_service.create_workflow(user_id=1, name="Auto off", is_automatic=True)
        low = storage_service.create_workflow(user_id=1, name="Low", is_automatic=True, priority=1)
        high = storage_service.create_workflow(user_id=1, name="High", is_automatic=True, priority=9)
        for wf in (manual, low, high):
            wf.status = WorkflowStatusEnum.ACTIVE
            storage_service.workflows.update(wf)

        automatic = storage_service.workflows.get_automatic()
        assert [w.id for w in automatic] == [high.id, low.id]
        assert auto_inactive.id not in [w.id for w in automatic]

    def test_delete_workflow_cascades_children(self, storage_service, workflow):
        step = storage_service.add_step(workflow.id, "action", 0, "Buy", {})
        storage_service.add_condition(workflow.id, "price", "aapl", ">", "100")
        storage_service.add_action(workflow.id, step.id, "buy", symbol="AAPL", quantity="1")

        assert storage_service.workflows.delete(workflow.id) is True
        assert storage_service.steps.get_ordered(workflow.id) == []
        assert storage_service.conditions.get_by_workflow(workflow.id) == []
        assert storage_service.actions.get_by_workflow(workflow.id) == []


class TestStepOrdering:
    """Steps run by step_order, ties broken by id."""

    def test_ordered_steps(self, storage_service, workflow):
        third = storage_service.add_step(workflow.id, "delay", 5, "Wait", {"seconds": 0})
        first = storage_service.add_step(workflow.id, "delay", 1, "Wait A", {"seconds": 0})
        second = storage_service.add_step(workflow.id, "delay", 1, "Wait B", {"seconds": 0})

        ordered = storage_service.get_ordered_steps(workflow.id)
        assert [s.id for s in ordered] == [first.id, second.id, third.id]
        assert ordered[0].step_type == StepTypeEnum.DELAY

    def test_add_step_clamps_negative_retries(self, storage_service, workflow):
        step = storage_service.add_step(workflow.id, "delay", 0, "Wait", {"seconds": 0}, max_retries=-3)
        assert step.max_retries == 0


class TestConditionsAndActions:

    def test_add_condition_normalizes_symbol(self, storage_service, workflow):
        condition = storage_service.add_condition(workflow.id, "price", " msft ", " >= ", "250")
        assert condition.symbol == "MSFT"
        assert condition.operator == ">="
        assert condition.last_result is None

    def test_actions_by_step_in_id_order(self, storage_service, workflow):
        step = storage_service.add_step(workflow.id, "action", 0, "Trade", {})
        other = storage_service.add_step(workflow.id, "action", 1, "Other", {})
        a1 = storage_service.add_action(workflow.id, step.id, "buy", symbol="aapl", quantity="1")
        storage_service.add_action(workflow.id, other.id, "alert")
        a3 = storage_service.add_action(workflow.id, step.id, "sell", symbol="AAPL", quantity="1")

        assert [a.id for a in storage_service.actions.get_by_step(step.id)] == [a1.id, a3.id]
        assert a1.symbol == "AAPL"


class TestExecutionLogRepository:

    def test_finish_sets_end_time_and_status(self, db_session, workflow):
        repo = ExecutionLogRepository(db_session)
        log = repo.create(workflow_id=workflow.id, triggered_by=TriggerSourceEnum.MANUAL)
        assert log.status == ExecutionStatusEnum.RUNNING
        assert log.execution_end_time is None

        log = repo.finish(log, ExecutionStatusEnum.COMPLETED, summary="done", details={"steps": []})
        assert log.status == ExecutionStatusEnum.COMPLETED
        assert log.execution_end_time >= log.execution_start_time
        assert log.details == {"steps": []}

    def test_finished_log_is_never_reopened(self, db_session, workflow):
        repo = ExecutionLogRepository(db_session)
        log = repo.create(workflow_id=workflow.id, triggered_by=TriggerSourceEnum.SCHEDULE)
        repo.finish(log, ExecutionStatusEnum.FAILED, error_message="boom")
        with pytest.raises(ValueError):
            repo.finish(log, ExecutionStatusEnum.COMPLETED)

    def test_logs_outlive_workflow(self, storage_service, workflow):
        log = storage_service.execution_logs.create(workflow_id=workflow.id, triggered_by=TriggerSourceEnum.MANUAL)
        storage_service.workflows.delete(workflow.id)
        assert storage_service.execution_logs.get_by_id(log.id) is not None

    def test_logs_most_recent_first(self, storage_service, workflow):
        first = storage_service.execution_logs.create(workflow_id=workflow.id, triggered_by=TriggerSourceEnum.MANUAL)
        second = storage_service.execution_logs.create(workflow_id=workflow.id, triggered_by=TriggerSourceEnum.EVENT)
        logs = storage_service.get_execution_logs(workflow.id)
        assert [log.id for log in logs] == [second.id, first.id]
        assert storage_service.execution_logs.count(workflow.id) == 2


class TestOrderRepository:

    def test_create_order_pending(self, db_session):
        repo = OrderRepository(db_session)
        order = repo.create(
            symbol="AAPL", side=OrderSideEnum.BUY, type=OrderTypeEnum.LIMIT,
            quantity=10, price=99.5, workflow_id=3, action_id=7,
        )
        assert order.status == OrderStatusEnum.PENDING
        assert order.workflow_id == 3
        assert repo.get_by_workflow(3)[0].id == order.id

    def test_uncommitted_create_can_be_rolled_back(self, db_session):
        repo = OrderRepository(db_session)
        order = repo.create(
            symbol="AAPL", side=OrderSideEnum.SELL, type=OrderTypeEnum.MARKET,
            quantity=1, commit=False,
        )
        assert order.id is not None
        db_session.rollback()
        assert repo.get_by_id(order.id) is None


class TestAuditLogs:

    def test_filter_and_count(self, storage_service, workflow):
        storage_service.create_audit_log(event_type="error", description="x", workflow_id=workflow.id)
        storage_service.create_audit_log(event_type="error", description="y")

        assert storage_service.count_audit_logs(event_type="error") == 2
        assert storage_service.count_audit_logs(event_type="error", workflow_id=workflow.id) == 1
        logs = storage_service.get_audit_logs(workflow_id=workflow.id)
        assert {log.event_type for log in logs} == {
            AuditEventTypeEnum.WORKFLOW_CREATED, AuditEventTypeEnum.ERROR,
        }

    def test_prune_keeps_recent_entries(self, storage_service, workflow):
        stale = storage_service.create_audit_log(event_type="error", description="old")
        stale.timestamp = stale.timestamp - timedelta(days=120)
        storage_service.db.commit()

        assert storage_service.prune_audit_logs(retention_days=90) == 1
        remaining = storage_service.get_audit_logs()
        assert [log.description for log in remaining] == [f"Workflow created: {workflow.name}"]

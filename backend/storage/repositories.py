"""
Repository classes for database CRUD operations.
Provides abstraction layer between services and database models.
"""
from typing import List, Optional, Dict, Any
from datetime import datetime, timedelta
from sqlalchemy.orm import Session

from storage.models import (
    Workflow, WorkflowStep, WorkflowCondition, WorkflowAction, WorkflowExecutionLog,
    Order, AuditLog,
    WorkflowStatusEnum, StepTypeEnum, ConditionTypeEnum, ActionTypeEnum,
    ExecutionStatusEnum, TriggerSourceEnum, OrderSideEnum, OrderTypeEnum, OrderStatusEnum,
    AuditEventTypeEnum, utc_now,
)


class WorkflowRepository:
    """Repository for Workflow CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: int, name: str, description: Optional[str] = None,
               schedule: Optional[str] = None, is_automatic: bool = False,
               priority: int = 0) -> Workflow:
        """Create a new workflow in the inactive state."""
        workflow = Workflow(
            user_id=user_id,
            name=name,
            description=description,
            status=WorkflowStatusEnum.INACTIVE,
            schedule=schedule,
            is_automatic=is_automatic,
            priority=priority,
            execution_count=0,
            log_history=[],
        )
        self.db.add(workflow)
        self.db.commit()
        self.db.refresh(workflow)
        return workflow

    def get_by_id(self, workflow_id: int) -> Optional[Workflow]:
        """Get workflow by ID."""
        return self.db.query(Workflow).filter(Workflow.id == workflow_id).first()

    def get_by_user(self, user_id: int) -> List[Workflow]:
        """Get all workflows owned by a user, highest priority first."""
        return (
            self.db.query(Workflow)
            .filter(Workflow.user_id == user_id)
            .order_by(Workflow.priority.desc(), Workflow.id.asc())
            .all()
        )

    def get_all(self, status: Optional[WorkflowStatusEnum] = None) -> List[Workflow]:
        """Get all workflows, optionally filtered by status."""
        query = self.db.query(Workflow)
        if status is not None:
            query = query.filter(Workflow.status == status)
        return query.order_by(Workflow.priority.desc(), Workflow.id.asc()).all()

    def get_automatic(self) -> List[Workflow]:
        """Active workflows flagged for scheduled execution."""
        return (
            self.db.query(Workflow)
            .filter(Workflow.status == WorkflowStatusEnum.ACTIVE)
            .filter(Workflow.is_automatic == True)  # noqa: E712
            .order_by(Workflow.priority.desc(), Workflow.id.asc())
            .all()
        )

    def update(self, workflow: Workflow) -> Workflow:
        """Update an existing workflow."""
        workflow.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(workflow)
        return workflow

    def delete(self, workflow_id: int) -> bool:
        """Delete a workflow together with its steps, conditions and actions."""
        workflow = self.get_by_id(workflow_id)
        if workflow:
            self.db.delete(workflow)
            self.db.commit()
            return True
        return False


class WorkflowStepRepository:
    """Repository for WorkflowStep CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, workflow_id: int, step_type: StepTypeEnum, step_order: int,
               name: str, config: Dict[str, Any], description: Optional[str] = None,
               is_enabled: bool = True, max_retries: int = 0) -> WorkflowStep:
        """Create a new step."""
        step = WorkflowStep(
            workflow_id=workflow_id,
            step_type=step_type,
            step_order=step_order,
            name=name,
            description=description,
            config=config,
            is_enabled=is_enabled,
            max_retries=max_retries,
            retry_count=0,
            execution_time=0,
        )
        self.db.add(step)
        self.db.commit()
        self.db.refresh(step)
        return step

    def get_by_id(self, step_id: int) -> Optional[WorkflowStep]:
        """Get step by ID."""
        return self.db.query(WorkflowStep).filter(WorkflowStep.id == step_id).first()

    def get_ordered(self, workflow_id: int) -> List[WorkflowStep]:
        """Steps of a workflow in execution order (step_order, then id)."""
        return (
            self.db.query(WorkflowStep)
            .filter(WorkflowStep.workflow_id == workflow_id)
            .order_by(WorkflowStep.step_order.asc(), WorkflowStep.id.asc())
            .all()
        )

    def update(self, step: WorkflowStep) -> WorkflowStep:
        """Update a step."""
        step.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(step)
        return step

    def delete(self, step_id: int) -> bool:
        """Delete a step."""
        step = self.get_by_id(step_id)
        if step:
            self.db.delete(step)
            self.db.commit()
            return True
        return False


class WorkflowConditionRepository:
    """Repository for WorkflowCondition CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, workflow_id: int, condition_type: ConditionTypeEnum, symbol: str,
               operator: str, value: str, timeframe: Optional[str] = None,
               lookback_period: Optional[int] = None,
               is_enabled: bool = True) -> WorkflowCondition:
        """Create a new condition."""
        condition = WorkflowCondition(
            workflow_id=workflow_id,
            condition_type=condition_type,
            symbol=symbol,
            operator=operator,
            value=value,
            timeframe=timeframe,
            lookback_period=lookback_period,
            is_enabled=is_enabled,
        )
        self.db.add(condition)
        self.db.commit()
        self.db.refresh(condition)
        return condition

    def get_by_id(self, condition_id: int) -> Optional[WorkflowCondition]:
        """Get condition by ID."""
        return self.db.query(WorkflowCondition).filter(WorkflowCondition.id == condition_id).first()

    def get_by_workflow(self, workflow_id: int) -> List[WorkflowCondition]:
        """Get all conditions of a workflow."""
        return (
            self.db.query(WorkflowCondition)
            .filter(WorkflowCondition.workflow_id == workflow_id)
            .order_by(WorkflowCondition.id.asc())
            .all()
        )

    def update(self, condition: WorkflowCondition) -> WorkflowCondition:
        """Update a condition."""
        condition.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(condition)
        return condition

    def delete(self, condition_id: int) -> bool:
        """Delete a condition."""
        condition = self.get_by_id(condition_id)
        if condition:
            self.db.delete(condition)
            self.db.commit()
            return True
        return False


class WorkflowActionRepository:
    """Repository for WorkflowAction CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, workflow_id: int, step_id: int, action_type: ActionTypeEnum,
               symbol: Optional[str] = None, quantity: Optional[str] = None,
               price: Optional[str] = None, order_type: Optional[str] = None,
               duration: Optional[str] = None,
               additional_params: Optional[Dict[str, Any]] = None,
               is_enabled: bool = True) -> WorkflowAction:
        """Create a new action."""
        action = WorkflowAction(
            workflow_id=workflow_id,
            step_id=step_id,
            action_type=action_type,
            symbol=symbol,
            quantity=quantity,
            price=price,
            order_type=order_type,
            duration=duration,
            additional_params=additional_params,
            is_enabled=is_enabled,
        )
        self.db.add(action)
        self.db.commit()
        self.db.refresh(action)
        return action

    def get_by_id(self, action_id: int) -> Optional[WorkflowAction]:
        """Get action by ID."""
        return self.db.query(WorkflowAction).filter(WorkflowAction.id == action_id).first()

    def get_by_workflow(self, workflow_id: int) -> List[WorkflowAction]:
        """Get all actions of a workflow."""
        return (
            self.db.query(WorkflowAction)
            .filter(WorkflowAction.workflow_id == workflow_id)
            .order_by(WorkflowAction.id.asc())
            .all()
        )

    def get_by_step(self, step_id: int) -> List[WorkflowAction]:
        """Get the actions a step triggers, in id order."""
        return (
            self.db.query(WorkflowAction)
            .filter(WorkflowAction.step_id == step_id)
            .order_by(WorkflowAction.id.asc())
            .all()
        )

    def update(self, action: WorkflowAction) -> WorkflowAction:
        """Update an action."""
        action.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(action)
        return action

    def delete(self, action_id: int) -> bool:
        """Delete an action."""
        action = self.get_by_id(action_id)
        if action:
            self.db.delete(action)
            self.db.commit()
            return True
        return False


class ExecutionLogRepository:
    """Repository for WorkflowExecutionLog operations. Rows are append-only."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, workflow_id: int, triggered_by: TriggerSourceEnum,
               status: ExecutionStatusEnum = ExecutionStatusEnum.RUNNING,
               started_at: Optional[datetime] = None) -> WorkflowExecutionLog:
        """Open a new execution log row."""
        log = WorkflowExecutionLog(
            workflow_id=workflow_id,
            triggered_by=triggered_by,
            status=status,
            execution_start_time=started_at or utc_now(),
            details={},
        )
        self.db.add(log)
        self.db.commit()
        self.db.refresh(log)
        return log

    def finish(self, log: WorkflowExecutionLog, status: ExecutionStatusEnum,
               summary: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
               error_message: Optional[str] = None) -> WorkflowExecutionLog:
        """Set the terminal status and end time. A finished log is never reopened."""
        if log.execution_end_time is not None:
            raise ValueError(f"Execution log {log.id} is already finished")
        log.status = status
        log.summary = summary
        log.details = details
        log.error_message = error_message
        log.execution_end_time = utc_now()
        self.db.commit()
        self.db.refresh(log)
        return log

    def get_by_id(self, log_id: int) -> Optional[WorkflowExecutionLog]:
        """Get execution log by ID."""
        return self.db.query(WorkflowExecutionLog).filter(WorkflowExecutionLog.id == log_id).first()

    def get_by_workflow(self, workflow_id: int, limit: int = 100,
                        offset: int = 0) -> List[WorkflowExecutionLog]:
        """Most recent logs of a workflow first."""
        return (
            self.db.query(WorkflowExecutionLog)
            .filter(WorkflowExecutionLog.workflow_id == workflow_id)
            .order_by(WorkflowExecutionLog.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count(self, workflow_id: int, status: Optional[ExecutionStatusEnum] = None) -> int:
        """Count logs of a workflow."""
        query = self.db.query(WorkflowExecutionLog).filter(WorkflowExecutionLog.workflow_id == workflow_id)
        if status is not None:
            query = query.filter(WorkflowExecutionLog.status == status)
        return query.count()


class OrderRepository:
    """Repository for Order CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, symbol: str, side: OrderSideEnum, type: OrderTypeEnum,
               quantity: float, price: Optional[float] = None,
               time_in_force: Optional[str] = None,
               workflow_id: Optional[int] = None,
               action_id: Optional[int] = None,
               commit: bool = True) -> Order:
        """Create a new order in the pending state."""
        order = Order(
            symbol=symbol,
            side=side,
            type=type,
            quantity=quantity,
            price=price,
            status=OrderStatusEnum.PENDING,
            time_in_force=time_in_force,
            workflow_id=workflow_id,
            action_id=action_id,
        )
        self.db.add(order)
        if commit:
            self.db.commit()
            self.db.refresh(order)
        else:
            self.db.flush()
        return order

    def get_by_id(self, order_id: int) -> Optional[Order]:
        """Get order by ID."""
        return self.db.query(Order).filter(Order.id == order_id).first()

    def get_by_workflow(self, workflow_id: int, limit: int = 100) -> List[Order]:
        """Get orders placed by a workflow."""
        return (
            self.db.query(Order)
            .filter(Order.workflow_id == workflow_id)
            .order_by(Order.created_at.desc())
            .limit(limit)
            .all()
        )

    def update(self, order: Order) -> Order:
        """Update an existing order."""
        order.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(order)
        return order


class AuditLogRepository:
    """Repository for AuditLog CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        event_type: AuditEventTypeEnum,
        description: str,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
        workflow_id: Optional[int] = None,
        order_id: Optional[int] = None
    ) -> AuditLog:
        """Create a new audit log entry."""
        audit_log = AuditLog(
            event_type=event_type,
            description=description,
            details=details,
            user_id=user_id,
            workflow_id=workflow_id,
            order_id=order_id
        )
        self.db.add(audit_log)
        self.db.commit()
        self.db.refresh(audit_log)
        return audit_log

    def get_all(
        self,
        limit: int = 100,
        offset: int = 0,
        event_type: Optional[AuditEventTypeEnum] = None,
        workflow_id: Optional[int] = None,
    ) -> List[AuditLog]:
        """Get audit logs with filtering and pagination."""
        query = self.db.query(AuditLog)

        if event_type:
            query = query.filter(AuditLog.event_type == event_type)
        if workflow_id:
            query = query.filter(AuditLog.workflow_id == workflow_id)

        query = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        return query.offset(offset).limit(limit).all()

    def count(self, event_type: Optional[AuditEventTypeEnum] = None,
              workflow_id: Optional[int] = None) -> int:
        """Count audit logs matching the filters."""
        query = self.db.query(AuditLog)
        if event_type:
            query = query.filter(AuditLog.event_type == event_type)
        if workflow_id:
            query = query.filter(AuditLog.workflow_id == workflow_id)
        return query.count()

    def delete_old_logs(self, days: int = 90) -> int:
        """Delete audit logs older than specified days."""
        cutoff_date = utc_now() - timedelta(days=days)
        deleted = self.db.query(AuditLog).filter(
            AuditLog.timestamp < cutoff_date
        ).delete()
        self.db.commit()
        return deleted

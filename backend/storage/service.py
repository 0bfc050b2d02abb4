"""
Storage service - High-level interface for storage operations.
Provides business logic on top of repositories.
"""
from typing import List, Optional, Dict, Any
from sqlalchemy.orm import Session

from storage.repositories import (
    WorkflowRepository, WorkflowStepRepository, WorkflowConditionRepository,
    WorkflowActionRepository, ExecutionLogRepository, OrderRepository, AuditLogRepository,
)
from storage.models import (
    Workflow, WorkflowStep, WorkflowCondition, WorkflowAction, WorkflowExecutionLog, AuditLog,
    StepTypeEnum, ConditionTypeEnum, ActionTypeEnum, AuditEventTypeEnum,
)
from storage.database import Base


class StorageService:
    """
    Main storage service coordinating all repository operations.
    This is the primary interface for backend services to interact with storage.
    """

    def __init__(self, db: Session):
        """Initialize storage service with database session."""
        self.db = db
        # Ensure schema exists for the active DB bind.
        # This keeps API behavior stable across different test DB overrides.
        Base.metadata.create_all(bind=self.db.get_bind())
        self.workflows = WorkflowRepository(db)
        self.steps = WorkflowStepRepository(db)
        self.conditions = WorkflowConditionRepository(db)
        self.actions = WorkflowActionRepository(db)
        self.execution_logs = ExecutionLogRepository(db)
        self.orders = OrderRepository(db)
        self.audit_logs = AuditLogRepository(db)

    # Workflow operations

    def create_workflow(self, user_id: int, name: str, description: Optional[str] = None,
                        schedule: Optional[str] = None, is_automatic: bool = False,
                        priority: int = 0) -> Workflow:
        """Create a workflow and record it in the audit trail."""
        workflow = self.workflows.create(
            user_id=user_id,
            name=name,
            description=description,
            schedule=schedule,
            is_automatic=is_automatic,
            priority=priority,
        )
        self.create_audit_log(
            event_type="workflow_created",
            description=f"Workflow created: {name}",
            details={"workflow_id": workflow.id},
            user_id=user_id,
            workflow_id=workflow.id,
        )
        return workflow

    def get_workflow(self, workflow_id: int) -> Optional[Workflow]:
        """Get a workflow by id."""
        return self.workflows.get_by_id(workflow_id)

    def get_ordered_steps(self, workflow_id: int) -> List[WorkflowStep]:
        """Steps in execution order."""
        return self.steps.get_ordered(workflow_id)

    # Step / condition / action operations

    def add_step(self, workflow_id: int, step_type: str, step_order: int, name: str,
                 config: Dict[str, Any], description: Optional[str] = None,
                 is_enabled: bool = True, max_retries: int = 0) -> WorkflowStep:
        """Add a step to a workflow."""
        return self.steps.create(
            workflow_id=workflow_id,
            step_type=StepTypeEnum(step_type),
            step_order=step_order,
            name=name,
            config=config,
            description=description,
            is_enabled=is_enabled,
            max_retries=max(0, int(max_retries)),
        )

    def add_condition(self, workflow_id: int, condition_type: str, symbol: str,
                      operator: str, value: str, timeframe: Optional[str] = None,
                      lookback_period: Optional[int] = None,
                      is_enabled: bool = True) -> WorkflowCondition:
        """Add a condition to a workflow."""
        return self.conditions.create(
            workflow_id=workflow_id,
            condition_type=ConditionTypeEnum(condition_type),
            symbol=symbol.strip().upper(),
            operator=operator.strip(),
            value=value,
            timeframe=timeframe,
            lookback_period=lookback_period,
            is_enabled=is_enabled,
        )

    def add_action(self, workflow_id: int, step_id: int, action_type: str,
                   **fields: Any) -> WorkflowAction:
        """Add an action to a workflow, bound to the step that triggers it."""
        symbol = fields.pop("symbol", None)
        return self.actions.create(
            workflow_id=workflow_id,
            step_id=step_id,
            action_type=ActionTypeEnum(action_type),
            symbol=symbol.strip().upper() if symbol else None,
            **fields,
        )

    # Execution log operations

    def get_execution_logs(self, workflow_id: int, limit: int = 100,
                           offset: int = 0) -> List[WorkflowExecutionLog]:
        """Get the most recent execution logs of a workflow."""
        return self.execution_logs.get_by_workflow(workflow_id, limit=limit, offset=offset)

    # Audit log operations

    def create_audit_log(
        self,
        event_type: str,
        description: str,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
        workflow_id: Optional[int] = None,
        order_id: Optional[int] = None
    ) -> AuditLog:
        """Create a new audit log entry."""
        return self.audit_logs.create(
            event_type=AuditEventTypeEnum(event_type),
            description=description,
            details=details,
            user_id=user_id,
            workflow_id=workflow_id,
            order_id=order_id
        )

    def get_audit_logs(
        self,
        limit: int = 100,
        offset: int = 0,
        event_type: Optional[str] = None,
        workflow_id: Optional[int] = None,
    ) -> List[AuditLog]:
        """Get audit logs with filtering and pagination."""
        event_type_enum = AuditEventTypeEnum(event_type) if event_type else None
        return self.audit_logs.get_all(
            limit=limit,
            offset=offset,
            event_type=event_type_enum,
            workflow_id=workflow_id,
        )

    def count_audit_logs(self, event_type: Optional[str] = None,
                         workflow_id: Optional[int] = None) -> int:
        """Count audit logs matching the filters."""
        event_type_enum = AuditEventTypeEnum(event_type) if event_type else None
        return self.audit_logs.count(event_type=event_type_enum, workflow_id=workflow_id)

    def prune_audit_logs(self, retention_days: int) -> int:
        """Drop audit entries older than the retention window."""
        return self.audit_logs.delete_old_logs(days=retention_days)

"""
Storage module - Database persistence layer.
Provides models, repositories, and services for data storage.
"""
from storage.database import Base, get_db, init_db, SessionLocal
from storage.models import (
    Workflow, WorkflowStep, WorkflowCondition, WorkflowAction, WorkflowExecutionLog,
    Order, AuditLog,
    WorkflowStatusEnum, StepTypeEnum, StepResultEnum, ConditionTypeEnum, ActionTypeEnum,
    ActionStatusEnum, ExecutionStatusEnum, TriggerSourceEnum,
    OrderSideEnum, OrderTypeEnum, OrderStatusEnum,
)
from storage.repositories import (
    WorkflowRepository, WorkflowStepRepository, WorkflowConditionRepository,
    WorkflowActionRepository, ExecutionLogRepository, OrderRepository, AuditLogRepository,
)
from storage.service import StorageService

__all__ = [
    # Database
    "Base",
    "get_db",
    "init_db",
    "SessionLocal",
    # Models
    "Workflow",
    "WorkflowStep",
    "WorkflowCondition",
    "WorkflowAction",
    "WorkflowExecutionLog",
    "Order",
    "AuditLog",
    # Enums
    "WorkflowStatusEnum",
    "StepTypeEnum",
    "StepResultEnum",
    "ConditionTypeEnum",
    "ActionTypeEnum",
    "ActionStatusEnum",
    "ExecutionStatusEnum",
    "TriggerSourceEnum",
    "OrderSideEnum",
    "OrderTypeEnum",
    "OrderStatusEnum",
    # Repositories
    "WorkflowRepository",
    "WorkflowStepRepository",
    "WorkflowConditionRepository",
    "WorkflowActionRepository",
    "ExecutionLogRepository",
    "OrderRepository",
    "AuditLogRepository",
    # Service
    "StorageService",
]

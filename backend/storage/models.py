"""
Database models for the trading workflow backend.
Defines the schema for workflows, their steps, conditions, actions,
execution logs, plus the orders and audit trail they produce.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, Enum as SQLEnum, Text, JSON, ForeignKey
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from storage.database import Base


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums for type safety
class WorkflowStatusEnum(str, enum.Enum):
    """Workflow lifecycle status."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class StepTypeEnum(str, enum.Enum):
    """Workflow step type."""
    CONDITION = "condition"
    ACTION = "action"
    NOTIFICATION = "notification"
    DELAY = "delay"


class StepResultEnum(str, enum.Enum):
    """Outcome of the most recent step execution."""
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ConditionTypeEnum(str, enum.Enum):
    """Condition metric family."""
    PRICE = "price"
    INDICATOR = "indicator"
    TIME = "time"
    VOLUME = "volume"
    PATTERN = "pattern"
    CUSTOM = "custom"


class ActionTypeEnum(str, enum.Enum):
    """Action type enumeration."""
    BUY = "buy"
    SELL = "sell"
    ALERT = "alert"
    WEBHOOK = "webhook"
    EMAIL = "email"
    SMS = "sms"
    CUSTOM = "custom"


class ActionStatusEnum(str, enum.Enum):
    """Action execution status."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class ExecutionStatusEnum(str, enum.Enum):
    """Execution log status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerSourceEnum(str, enum.Enum):
    """Origin of a run request."""
    SCHEDULE = "schedule"
    MANUAL = "manual"
    EVENT = "event"
    CONDITION = "condition"


class OrderSideEnum(str, enum.Enum):
    """Order side enumeration."""
    BUY = "buy"
    SELL = "sell"


class OrderTypeEnum(str, enum.Enum):
    """Order type enumeration."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class OrderStatusEnum(str, enum.Enum):
    """Order status enumeration."""
    PENDING = "pending"
    OPEN = "open"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class AuditEventTypeEnum(str, enum.Enum):
    """Audit event type enumeration."""
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_STATUS_CHANGED = "workflow_status_changed"
    WORKFLOW_RUN_REJECTED = "workflow_run_rejected"
    WORKFLOW_RUN_FAILED = "workflow_run_failed"
    ORDER_CREATED = "order_created"
    ORDER_REJECTED = "order_rejected"
    NOTIFICATION_SENT = "notification_sent"
    ERROR = "error"


# Database Models

class Workflow(Base):
    """
    Workflow model - a user-defined automation composed of ordered steps.
    """
    __tablename__ = "trading_workflows"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(WorkflowStatusEnum), nullable=False, default=WorkflowStatusEnum.INACTIVE, index=True)

    # Execution bookkeeping, written only by the workflow engine
    execution_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime, nullable=True)
    log_history = Column(JSON, nullable=False, default=list)

    # Scheduling hints consumed by the external scheduler
    schedule = Column(String(100), nullable=True)  # cron expression
    is_automatic = Column(Boolean, nullable=False, default=False)
    priority = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    steps = relationship(
        "WorkflowStep", back_populates="workflow", cascade="all, delete-orphan"
    )
    conditions = relationship(
        "WorkflowCondition", back_populates="workflow", cascade="all, delete-orphan"
    )
    actions = relationship(
        "WorkflowAction", back_populates="workflow", cascade="all, delete-orphan"
    )


class WorkflowStep(Base):
    """
    WorkflowStep model - one unit of work within a workflow.
    """
    __tablename__ = "workflow_steps"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("trading_workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    step_type = Column(SQLEnum(StepTypeEnum), nullable=False)
    step_order = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    config = Column(JSON, nullable=False, default=dict)  # typed per step_type
    is_enabled = Column(Boolean, nullable=False, default=True)

    # Last execution details
    execution_time = Column(Integer, nullable=False, default=0)  # ms
    last_result = Column(SQLEnum(StepResultEnum), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    workflow = relationship("Workflow", back_populates="steps")


class WorkflowCondition(Base):
    """
    WorkflowCondition model - a boolean gate evaluated against market data.
    """
    __tablename__ = "workflow_conditions"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("trading_workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    condition_type = Column(SQLEnum(ConditionTypeEnum), nullable=False)
    symbol = Column(String(20), nullable=False)
    # Operator and value stay free-form text; the evaluator validates them.
    operator = Column(String(20), nullable=False)
    value = Column(Text, nullable=False)
    timeframe = Column(String(10), nullable=True)  # 1m, 5m, 15m, 1h, 4h, 1d
    lookback_period = Column(Integer, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    last_evaluated = Column(DateTime, nullable=True)
    last_result = Column(Boolean, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    workflow = relationship("Workflow", back_populates="conditions")


class WorkflowAction(Base):
    """
    WorkflowAction model - a side-effecting operation triggered by a step.
    """
    __tablename__ = "workflow_actions"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("trading_workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    step_id = Column(Integer, nullable=False, index=True)
    action_type = Column(SQLEnum(ActionTypeEnum), nullable=False)

    # Literal values or formulas such as "10% of portfolio"
    symbol = Column(String(20), nullable=True)
    quantity = Column(String(100), nullable=True)
    price = Column(String(100), nullable=True)
    order_type = Column(String(20), nullable=True)
    duration = Column(String(20), nullable=True)  # day, gtc, gtd
    additional_params = Column(JSON, nullable=True)

    is_enabled = Column(Boolean, nullable=False, default=True)
    last_executed = Column(DateTime, nullable=True)
    execution_status = Column(SQLEnum(ActionStatusEnum), nullable=True, default=ActionStatusEnum.PENDING)
    error_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    workflow = relationship("Workflow", back_populates="actions")


class WorkflowExecutionLog(Base):
    """
    WorkflowExecutionLog model - audit record of one workflow run.
    References the workflow by id only so logs outlive the workflow.
    """
    __tablename__ = "workflow_execution_logs"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, nullable=False, index=True)
    execution_start_time = Column(DateTime, default=utc_now, nullable=False, index=True)
    execution_end_time = Column(DateTime, nullable=True)
    status = Column(SQLEnum(ExecutionStatusEnum), nullable=False)
    triggered_by = Column(SQLEnum(TriggerSourceEnum), nullable=False)
    summary = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)


class Order(Base):
    """
    Order model - orders placed by workflow actions.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(100), nullable=True, index=True)  # Broker order ID
    symbol = Column(String(20), nullable=False, index=True)
    side = Column(SQLEnum(OrderSideEnum), nullable=False)
    type = Column(SQLEnum(OrderTypeEnum), nullable=False)
    status = Column(SQLEnum(OrderStatusEnum), nullable=False, index=True)
    time_in_force = Column(String(10), nullable=True)

    # Order details
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=True)  # Limit/stop price
    filled_quantity = Column(Float, default=0.0)
    avg_fill_price = Column(Float, nullable=True)
    reject_reason = Column(Text, nullable=True)

    # Workflow association (optional)
    workflow_id = Column(Integer, nullable=True, index=True)
    action_id = Column(Integer, nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)
    filled_at = Column(DateTime, nullable=True)


class AuditLog(Base):
    """
    AuditLog model - tracks system events and actions.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(SQLEnum(AuditEventTypeEnum), nullable=False, index=True)
    description = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)

    # Optional references
    user_id = Column(Integer, nullable=True, index=True)
    workflow_id = Column(Integer, nullable=True, index=True)
    order_id = Column(Integer, nullable=True, index=True)

    # Timestamps
    timestamp = Column(DateTime, default=utc_now, nullable=False, index=True)

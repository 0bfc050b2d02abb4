"""
API Data Models and Contracts.
Defines Pydantic models for request/response validation.
"""
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from enum import Enum
import json
import re
from pydantic import BaseModel, Field, field_validator

_SYMBOL_RE = re.compile(r"^[A-Z][A-Z0-9.\-]{0,9}$")

Timeframe = Literal["1m", "5m", "15m", "30m", "1h", "4h", "1d"]
Duration = Literal["day", "gtc", "gtd", "ioc", "fok"]


def _normalize_symbol(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    symbol = value.strip().upper()
    if not _SYMBOL_RE.match(symbol):
        raise ValueError("Invalid symbol format")
    return symbol


def _normalize_condition_value(value: Any) -> Any:
    """Conditions store their comparison value as text."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        raise ValueError("value must be a number, a range, or text")
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    raise ValueError("value must be a number, a range, or text")


# ============================================================================
# Enums
# ============================================================================

class WorkflowStatus(str, Enum):
    """Workflow status enumeration."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class StepType(str, Enum):
    """Workflow step type enumeration."""
    CONDITION = "condition"
    ACTION = "action"
    NOTIFICATION = "notification"
    DELAY = "delay"


class ConditionType(str, Enum):
    """Condition type enumeration."""
    PRICE = "price"
    INDICATOR = "indicator"
    TIME = "time"
    VOLUME = "volume"
    PATTERN = "pattern"
    CUSTOM = "custom"


class ConditionOperator(str, Enum):
    """Condition comparison operator enumeration."""
    GT = ">"
    LT = "<"
    EQ = "=="
    GTE = ">="
    LTE = "<="
    BETWEEN = "between"
    CROSSES_ABOVE = "crosses_above"
    CROSSES_BELOW = "crosses_below"


class ActionType(str, Enum):
    """Action type enumeration."""
    BUY = "buy"
    SELL = "sell"
    ALERT = "alert"
    WEBHOOK = "webhook"
    EMAIL = "email"
    SMS = "sms"
    CUSTOM = "custom"


class ExecutionStatus(str, Enum):
    """Execution log status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerSource(str, Enum):
    """Run trigger enumeration."""
    SCHEDULE = "schedule"
    MANUAL = "manual"
    EVENT = "event"
    CONDITION = "condition"


class AuditEventType(str, Enum):
    """Audit event type enumeration."""
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_STATUS_CHANGED = "workflow_status_changed"
    WORKFLOW_RUN_REJECTED = "workflow_run_rejected"
    WORKFLOW_RUN_FAILED = "workflow_run_failed"
    ORDER_CREATED = "order_created"
    ORDER_REJECTED = "order_rejected"
    NOTIFICATION_SENT = "notification_sent"
    ERROR = "error"


# ============================================================================
# Workflow Models
# ============================================================================

class WorkflowCreateRequest(BaseModel):
    """Workflow creation request. New workflows start inactive."""
    user_id: int = Field(..., ge=1, description="Owner user ID")
    name: str = Field(..., min_length=1, max_length=200, description="Workflow name")
    description: Optional[str] = Field(None, max_length=2000, description="Workflow description")
    schedule: Optional[str] = Field(None, max_length=100, description="Cron expression for the external scheduler")
    is_automatic: bool = Field(default=False, description="Whether the scheduler should trigger this workflow")
    priority: int = Field(default=0, ge=0, le=100, description="Higher runs first in a scheduled tick")


class WorkflowUpdateRequest(BaseModel):
    """Workflow update request. Status changes use the dedicated endpoints."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    schedule: Optional[str] = Field(None, max_length=100)
    is_automatic: Optional[bool] = None
    priority: Optional[int] = Field(None, ge=0, le=100)


class Workflow(BaseModel):
    """Workflow model."""
    id: int = Field(..., description="Workflow ID")
    user_id: int = Field(..., description="Owner user ID")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    status: WorkflowStatus = Field(..., description="Lifecycle status")
    execution_count: int = Field(default=0, description="Number of executed runs")
    last_executed_at: Optional[datetime] = Field(None, description="End time of the latest run")
    schedule: Optional[str] = Field(None, description="Cron expression")
    is_automatic: bool = Field(default=False, description="Scheduler-triggered")
    priority: int = Field(default=0, description="Scheduling priority")
    log_history: List[Dict[str, Any]] = Field(default_factory=list, description="Compact records of recent runs")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")


class WorkflowsResponse(BaseModel):
    """Workflows list response."""
    workflows: List[Workflow] = Field(default_factory=list, description="List of workflows")
    total_count: int = Field(default=0, description="Total workflow count")


# ============================================================================
# Step Models
# ============================================================================

class StepCreateRequest(BaseModel):
    """Step creation request. `config` is validated against the step type."""
    step_type: StepType = Field(..., description="Step type")
    step_order: int = Field(..., ge=0, description="Execution order; ties run in id order")
    name: str = Field(..., min_length=1, max_length=200, description="Step name")
    description: Optional[str] = Field(None, max_length=2000)
    config: Dict[str, Any] = Field(default_factory=dict, description="Typed step configuration")
    is_enabled: bool = Field(default=True)
    max_retries: int = Field(default=0, ge=0, le=10, description="Retries after the first attempt")


class StepUpdateRequest(BaseModel):
    """Step update request."""
    step_order: Optional[int] = Field(None, ge=0)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    config: Optional[Dict[str, Any]] = None
    is_enabled: Optional[bool] = None
    max_retries: Optional[int] = Field(None, ge=0, le=10)


class Step(BaseModel):
    """Workflow step model."""
    id: int
    workflow_id: int
    step_type: StepType
    step_order: int
    name: str
    description: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    is_enabled: bool = True
    execution_time: int = Field(default=0, description="Duration of the last final attempt in ms")
    last_result: Optional[str] = Field(None, description="success, failure or skipped")
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0


# ============================================================================
# Condition Models
# ============================================================================

class ConditionCreateRequest(BaseModel):
    """Condition creation request."""
    condition_type: ConditionType = Field(..., description="Metric family")
    symbol: str = Field(..., description="Target symbol")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: str = Field(..., min_length=1, max_length=500, description="Number, range or HH:MM time")
    timeframe: Optional[Timeframe] = Field(None, description="Bar timeframe")
    lookback_period: Optional[int] = Field(None, ge=1, le=500, description="Samples in the lookback window")
    is_enabled: bool = Field(default=True)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, value: str) -> str:
        return _normalize_symbol(value)

    @field_validator("value", mode="before")
    @classmethod
    def normalize_value(cls, value: Any) -> Any:
        return _normalize_condition_value(value)


class ConditionUpdateRequest(BaseModel):
    """Condition update request."""
    condition_type: Optional[ConditionType] = None
    symbol: Optional[str] = None
    operator: Optional[ConditionOperator] = None
    value: Optional[str] = Field(None, min_length=1, max_length=500)
    timeframe: Optional[Timeframe] = None
    lookback_period: Optional[int] = Field(None, ge=1, le=500)
    is_enabled: Optional[bool] = None

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_symbol(value)

    @field_validator("value", mode="before")
    @classmethod
    def normalize_value(cls, value: Any) -> Any:
        return _normalize_condition_value(value)


class Condition(BaseModel):
    """Workflow condition model."""
    id: int
    workflow_id: int
    condition_type: ConditionType
    symbol: str
    operator: str
    value: str
    timeframe: Optional[str] = None
    lookback_period: Optional[int] = None
    is_enabled: bool = True
    last_evaluated: Optional[datetime] = None
    last_result: Optional[bool] = None


# ============================================================================
# Action Models
# ============================================================================

class ActionCreateRequest(BaseModel):
    """
    Action creation request.

    `quantity` and `price` accept a number or a formula such as
    "10% of portfolio" / "99% of market"; both are checked on create.
    """
    step_id: int = Field(..., ge=1, description="Step that triggers this action")
    action_type: ActionType = Field(..., description="Action type")
    symbol: Optional[str] = Field(None, description="Target symbol")
    quantity: Optional[str] = Field(None, max_length=100, description="Share count or formula")
    price: Optional[str] = Field(None, max_length=100, description="Limit price, 'market', or formula")
    order_type: Optional[Literal["market", "limit"]] = Field(None, description="Defaults from price")
    duration: Optional[Duration] = Field(None, description="Time in force")
    additional_params: Optional[Dict[str, Any]] = Field(None, description="Typed per action type")
    is_enabled: bool = Field(default=True)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_symbol(value)

    @field_validator("quantity", "price", mode="before")
    @classmethod
    def stringify_number(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ActionUpdateRequest(BaseModel):
    """Action update request."""
    step_id: Optional[int] = Field(None, ge=1)
    symbol: Optional[str] = None
    quantity: Optional[str] = Field(None, max_length=100)
    price: Optional[str] = Field(None, max_length=100)
    order_type: Optional[Literal["market", "limit"]] = None
    duration: Optional[Duration] = None
    additional_params: Optional[Dict[str, Any]] = None
    is_enabled: Optional[bool] = None

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_symbol(value)

    @field_validator("quantity", "price", mode="before")
    @classmethod
    def stringify_number(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class Action(BaseModel):
    """Workflow action model."""
    id: int
    workflow_id: int
    step_id: int
    action_type: ActionType
    symbol: Optional[str] = None
    quantity: Optional[str] = None
    price: Optional[str] = None
    order_type: Optional[str] = None
    duration: Optional[str] = None
    additional_params: Optional[Dict[str, Any]] = None
    is_enabled: bool = True
    last_executed: Optional[datetime] = None
    execution_status: Optional[str] = None
    error_message: Optional[str] = None


class WorkflowDetail(Workflow):
    """Workflow with its steps, conditions and actions."""
    steps: List[Step] = Field(default_factory=list, description="Steps in execution order")
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)


# ============================================================================
# Run / Execution Log Models
# ============================================================================

class RunRequest(BaseModel):
    """Run request; operator-facing runs are manual."""
    triggered_by: TriggerSource = Field(default=TriggerSource.MANUAL, description="Trigger source")


class ExecutionLog(BaseModel):
    """Execution log of one run."""
    id: int
    workflow_id: int
    status: ExecutionStatus
    triggered_by: TriggerSource
    execution_start_time: datetime
    execution_end_time: Optional[datetime] = None
    summary: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class ExecutionLogsResponse(BaseModel):
    """Execution logs list response."""
    logs: List[ExecutionLog] = Field(default_factory=list)
    total_count: int = Field(default=0, description="Total logs of the workflow")


# ============================================================================
# Audit Models
# ============================================================================

class AuditLog(BaseModel):
    """Audit log entry model."""
    id: str = Field(..., description="Log entry ID")
    timestamp: datetime = Field(..., description="Event timestamp")
    event_type: AuditEventType = Field(..., description="Event type")
    description: str = Field(..., description="Event description")
    workflow_id: Optional[int] = Field(None, description="Related workflow")
    order_id: Optional[int] = Field(None, description="Related order")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional event details")


class AuditLogsResponse(BaseModel):
    """Audit logs list response."""
    logs: List[AuditLog] = Field(default_factory=list, description="List of audit log entries")
    total_count: int = Field(default=0, description="Total log count")

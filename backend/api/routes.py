"""
API Routes.
Defines the REST API endpoints for workflows, their parts, runs and audit logs.
"""
from datetime import datetime, timezone
import logging
from fastapi import APIRouter, HTTPException, Depends, Query, Request
from typing import List, Optional, Dict, Any
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.exc import SQLAlchemyError

from storage.database import get_db
from storage.service import StorageService
from storage.models import (
    Workflow as DBWorkflow,
    WorkflowStep as DBStep,
    WorkflowCondition as DBCondition,
    WorkflowAction as DBAction,
    WorkflowExecutionLog as DBExecutionLog,
    WorkflowStatusEnum,
    StepTypeEnum,
    ActionTypeEnum,
)
from engine.configs import parse_step_config, parse_action_params, ConditionStepConfig
from engine.conditions import validate_condition
from engine.errors import ValidationError, InvalidStatusTransition, WorkflowNotFound
from engine.formulas import parse_formula

from .engine_manager import engine_manager
from .middleware import limiter, run_rate_limit
from .models import (
    WorkflowStatus,
    WorkflowCreateRequest,
    WorkflowUpdateRequest,
    Workflow,
    WorkflowDetail,
    WorkflowsResponse,
    StepCreateRequest,
    StepUpdateRequest,
    Step,
    ConditionCreateRequest,
    ConditionUpdateRequest,
    Condition,
    ActionCreateRequest,
    ActionUpdateRequest,
    Action,
    RunRequest,
    ExecutionLog,
    ExecutionLogsResponse,
    AuditLog,
    AuditEventType,
    AuditLogsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_ORDER_ACTIONS = {ActionTypeEnum.BUY, ActionTypeEnum.SELL}


# ============================================================================
# Helpers
# ============================================================================

def _ensure_utc_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes to UTC for stable API serialization."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _validation_error(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


def _get_workflow_or_404(storage: StorageService, workflow_id: int) -> DBWorkflow:
    workflow = storage.get_workflow(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


def _get_step_or_404(storage: StorageService, workflow_id: int, step_id: int) -> DBStep:
    step = storage.steps.get_by_id(step_id)
    if not step or step.workflow_id != workflow_id:
        raise HTTPException(status_code=404, detail="Step not found")
    return step


def _get_condition_or_404(storage: StorageService, workflow_id: int, condition_id: int) -> DBCondition:
    condition = storage.conditions.get_by_id(condition_id)
    if not condition or condition.workflow_id != workflow_id:
        raise HTTPException(status_code=404, detail="Condition not found")
    return condition


def _get_action_or_404(storage: StorageService, workflow_id: int, action_id: int) -> DBAction:
    action = storage.actions.get_by_id(action_id)
    if not action or action.workflow_id != workflow_id:
        raise HTTPException(status_code=404, detail="Action not found")
    return action


def _to_workflow(db_workflow: DBWorkflow) -> Workflow:
    return Workflow(
        id=db_workflow.id,
        user_id=db_workflow.user_id,
        name=db_workflow.name,
        description=db_workflow.description,
        status=WorkflowStatus(_enum_value(db_workflow.status)),
        execution_count=db_workflow.execution_count or 0,
        last_executed_at=_ensure_utc_datetime(db_workflow.last_executed_at),
        schedule=db_workflow.schedule,
        is_automatic=bool(db_workflow.is_automatic),
        priority=db_workflow.priority or 0,
        log_history=list(db_workflow.log_history or []),
        created_at=_ensure_utc_datetime(db_workflow.created_at),
        updated_at=_ensure_utc_datetime(db_workflow.updated_at),
    )


def _to_step(db_step: DBStep) -> Step:
    return Step(
        id=db_step.id,
        workflow_id=db_step.workflow_id,
        step_type=_enum_value(db_step.step_type),
        step_order=db_step.step_order,
        name=db_step.name,
        description=db_step.description,
        config=dict(db_step.config or {}),
        is_enabled=bool(db_step.is_enabled),
        execution_time=db_step.execution_time or 0,
        last_result=_enum_value(db_step.last_result),
        error_message=db_step.error_message,
        retry_count=db_step.retry_count or 0,
        max_retries=db_step.max_retries or 0,
    )


def _to_condition(db_condition: DBCondition) -> Condition:
    return Condition(
        id=db_condition.id,
        workflow_id=db_condition.workflow_id,
        condition_type=_enum_value(db_condition.condition_type),
        symbol=db_condition.symbol,
        operator=db_condition.operator,
        value=db_condition.value,
        timeframe=db_condition.timeframe,
        lookback_period=db_condition.lookback_period,
        is_enabled=bool(db_condition.is_enabled),
        last_evaluated=_ensure_utc_datetime(db_condition.last_evaluated),
        last_result=db_condition.last_result,
    )


def _to_action(db_action: DBAction) -> Action:
    return Action(
        id=db_action.id,
        workflow_id=db_action.workflow_id,
        step_id=db_action.step_id,
        action_type=_enum_value(db_action.action_type),
        symbol=db_action.symbol,
        quantity=db_action.quantity,
        price=db_action.price,
        order_type=db_action.order_type,
        duration=db_action.duration,
        additional_params=db_action.additional_params,
        is_enabled=bool(db_action.is_enabled),
        last_executed=_ensure_utc_datetime(db_action.last_executed),
        execution_status=_enum_value(db_action.execution_status),
        error_message=db_action.error_message,
    )


def _to_execution_log(db_log: DBExecutionLog) -> ExecutionLog:
    return ExecutionLog(
        id=db_log.id,
        workflow_id=db_log.workflow_id,
        status=_enum_value(db_log.status),
        triggered_by=_enum_value(db_log.triggered_by),
        execution_start_time=_ensure_utc_datetime(db_log.execution_start_time),
        execution_end_time=_ensure_utc_datetime(db_log.execution_end_time),
        summary=db_log.summary,
        details=db_log.details,
        error_message=db_log.error_message,
    )


def _check_step_config(storage: StorageService, workflow_id: int, step_type: Any,
                       config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a step config and return its normalized form."""
    try:
        parsed = parse_step_config(step_type, config)
    except ValidationError as exc:
        raise _validation_error(exc)
    if isinstance(parsed, ConditionStepConfig):
        for condition_id in parsed.condition_ids:
            condition = storage.conditions.get_by_id(condition_id)
            if not condition or condition.workflow_id != workflow_id:
                raise HTTPException(
                    status_code=400,
                    detail=f"Condition {condition_id} does not belong to workflow {workflow_id}",
                )
    return parsed.model_dump(exclude_none=True)


def _check_action_fields(action_type: ActionTypeEnum, symbol: Optional[str], quantity: Optional[str],
                         price: Optional[str], additional_params: Optional[Dict[str, Any]]) -> None:
    try:
        parse_action_params(action_type, additional_params)
        if action_type in _ORDER_ACTIONS:
            if not symbol:
                raise HTTPException(status_code=400, detail=f"{action_type.value} actions require a symbol")
            if not quantity:
                raise HTTPException(status_code=400, detail=f"{action_type.value} actions require a quantity")
            parse_formula(quantity, "quantity")
            if price:
                parse_formula(price, "price")
    except ValidationError as exc:
        raise _validation_error(exc)


def _check_workflow_mutable(workflow: DBWorkflow) -> None:
    if WorkflowStatusEnum(workflow.status) == WorkflowStatusEnum.ARCHIVED:
        raise HTTPException(status_code=409, detail="Archived workflows cannot be modified")


# ============================================================================
# Workflow Endpoints
# ============================================================================

@router.get("/workflows", response_model=WorkflowsResponse)
async def get_workflows(
    user_id: Optional[int] = Query(default=None, ge=1),
    status: Optional[WorkflowStatus] = None,
    db: Session = Depends(get_db),
):
    """
    List workflows, highest priority first.
    """
    storage = StorageService(db)
    if user_id is not None:
        db_workflows = storage.workflows.get_by_user(user_id)
        if status is not None:
            db_workflows = [w for w in db_workflows if _enum_value(w.status) == status.value]
    else:
        db_workflows = storage.workflows.get_all(
            status=WorkflowStatusEnum(status.value) if status else None
        )

    workflows = [_to_workflow(w) for w in db_workflows]
    return WorkflowsResponse(workflows=workflows, total_count=len(workflows))


@router.post("/workflows", response_model=Workflow)
async def create_workflow(request: WorkflowCreateRequest, db: Session = Depends(get_db)):
    """
    Create a new workflow. It starts inactive.
    """
    storage = StorageService(db)
    db_workflow = storage.create_workflow(
        user_id=request.user_id,
        name=request.name,
        description=request.description,
        schedule=request.schedule,
        is_automatic=request.is_automatic,
        priority=request.priority,
    )
    logger.info("Workflow %s created for user %s", db_workflow.id, request.user_id)
    return _to_workflow(db_workflow)


@router.post("/workflows/run-automatic", response_model=List[ExecutionLog])
@limiter.limit(run_rate_limit)
async def run_automatic_workflows(request: Request):
    """
    Run every active automatic workflow once, as a scheduler tick would.
    """
    logs = await engine_manager.get_engine().run_automatic()
    return [_to_execution_log(log) for log in logs]


@router.get("/workflows/{workflow_id}", response_model=WorkflowDetail)
async def get_workflow(workflow_id: int, db: Session = Depends(get_db)):
    """
    Get a workflow with its steps, conditions and actions.
    """
    storage = StorageService(db)
    db_workflow = _get_workflow_or_404(storage, workflow_id)
    return WorkflowDetail(
        **_to_workflow(db_workflow).model_dump(),
        steps=[_to_step(s) for s in storage.get_ordered_steps(workflow_id)],
        conditions=[_to_condition(c) for c in storage.conditions.get_by_workflow(workflow_id)],
        actions=[_to_action(a) for a in storage.actions.get_by_workflow(workflow_id)],
    )


@router.put("/workflows/{workflow_id}", response_model=Workflow)
async def update_workflow(workflow_id: int, request: WorkflowUpdateRequest, db: Session = Depends(get_db)):
    """
    Update workflow metadata. Status changes go through the status endpoints.
    """
    storage = StorageService(db)
    db_workflow = _get_workflow_or_404(storage, workflow_id)
    _check_workflow_mutable(db_workflow)

    for field, value in request.model_dump(exclude_unset=True).items():
        if value is None and field in ("name", "is_automatic", "priority"):
            continue
        setattr(db_workflow, field, value)

    db_workflow = storage.workflows.update(db_workflow)
    return _to_workflow(db_workflow)


@router.delete("/workflows/{workflow_id}")
async def delete_workflow(workflow_id: int, db: Session = Depends(get_db)):
    """
    Delete a workflow with its steps, conditions and actions. Execution logs are kept.
    """
    storage = StorageService(db)
    db_workflow = _get_workflow_or_404(storage, workflow_id)
    if engine_manager.get_engine().registry.is_busy(workflow_id):
        raise HTTPException(status_code=409, detail="Workflow has a run in progress")

    try:
        storage.create_audit_log(
            event_type="workflow_status_changed",
            description=f"Workflow deleted: {db_workflow.name}",
            details={"operation": "delete", "from": _enum_value(db_workflow.status)},
            user_id=db_workflow.user_id,
            workflow_id=workflow_id,
        )
        storage.workflows.delete(workflow_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail=f"Failed to delete workflow: {str(exc)}")

    return {"message": "Workflow deleted"}


async def _change_status(workflow_id: int, operation: str, db: Session) -> Workflow:
    engine = engine_manager.get_engine()
    try:
        db_workflow = getattr(engine, operation)(workflow_id, db=db)
    except WorkflowNotFound:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except InvalidStatusTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _to_workflow(db_workflow)


@router.post("/workflows/{workflow_id}/activate", response_model=Workflow)
async def activate_workflow(workflow_id: int, db: Session = Depends(get_db)):
    """Activate an inactive or paused workflow."""
    return await _change_status(workflow_id, "activate", db)


@router.post("/workflows/{workflow_id}/pause", response_model=Workflow)
async def pause_workflow(workflow_id: int, db: Session = Depends(get_db)):
    """Pause an active workflow."""
    return await _change_status(workflow_id, "pause", db)


@router.post("/workflows/{workflow_id}/deactivate", response_model=Workflow)
async def deactivate_workflow(workflow_id: int, db: Session = Depends(get_db)):
    return await _change_status(workflow_id, "deactivate", db)


@router.post("/workflows/{workflow_id}/archive", response_model=Workflow)
async def archive_workflow(workflow_id: int, db: Session = Depends(get_db)):
    """Archive a workflow. Archived workflows never run again."""
    return await _change_status(workflow_id, "archive", db)


@router.post("/workflows/{workflow_id}/run", response_model=ExecutionLog)
@limiter.limit(run_rate_limit)
async def run_workflow(request: Request, workflow_id: int, payload: Optional[RunRequest] = None):
    """
    Run a workflow once and return its execution log.

    A run that cannot start (unknown or non-runnable workflow, busy
    rejection) still answers with its failed log.
    """
    triggered_by = (payload or RunRequest()).triggered_by
    log = await engine_manager.get_engine().run(workflow_id, triggered_by=triggered_by.value)
    return _to_execution_log(log)


@router.get("/workflows/{workflow_id}/logs", response_model=ExecutionLogsResponse)
async def get_workflow_logs(
    workflow_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    """
    Get execution logs of a workflow, most recent first.
    """
    storage = StorageService(db)
    db_logs = storage.get_execution_logs(workflow_id, limit=limit, offset=offset)
    return ExecutionLogsResponse(
        logs=[_to_execution_log(log) for log in db_logs],
        total_count=storage.execution_logs.count(workflow_id),
    )


@router.get("/workflows/{workflow_id}/logs/{log_id}", response_model=ExecutionLog)
async def get_workflow_log(workflow_id: int, log_id: int, db: Session = Depends(get_db)):
    """Get one execution log of a workflow."""
    db_log = StorageService(db).execution_logs.get_by_id(log_id)
    if not db_log or db_log.workflow_id != workflow_id:
        raise HTTPException(status_code=404, detail="Execution log not found")
    return _to_execution_log(db_log)


# ============================================================================
# Step Endpoints
# ============================================================================

@router.post("/workflows/{workflow_id}/steps", response_model=Step)
async def create_step(workflow_id: int, request: StepCreateRequest, db: Session = Depends(get_db)):
    """
    Add a step to a workflow. The config is validated against the step type.
    """
    storage = StorageService(db)
    db_workflow = _get_workflow_or_404(storage, workflow_id)
    _check_workflow_mutable(db_workflow)
    config = _check_step_config(storage, workflow_id, request.step_type.value, request.config)

    db_step = storage.add_step(
        workflow_id=workflow_id,
        step_type=request.step_type.value,
        step_order=request.step_order,
        name=request.name,
        config=config,
        description=request.description,
        is_enabled=request.is_enabled,
        max_retries=request.max_retries,
    )
    return _to_step(db_step)


@router.get("/workflows/{workflow_id}/steps/{step_id}", response_model=Step)
async def get_step(workflow_id: int, step_id: int, db: Session = Depends(get_db)):
    storage = StorageService(db)
    _get_workflow_or_404(storage, workflow_id)
    return _to_step(_get_step_or_404(storage, workflow_id, step_id))


@router.put("/workflows/{workflow_id}/steps/{step_id}", response_model=Step)
async def update_step(workflow_id: int, step_id: int, request: StepUpdateRequest,
                      db: Session = Depends(get_db)):
    """
    Update a step.
    """
    storage = StorageService(db)
    _check_workflow_mutable(_get_workflow_or_404(storage, workflow_id))
    db_step = _get_step_or_404(storage, workflow_id, step_id)

    updates = request.model_dump(exclude_unset=True)
    if updates.get("config") is not None:
        db_step.config = _check_step_config(storage, workflow_id, db_step.step_type, updates.pop("config"))
        flag_modified(db_step, "config")
    for field, value in updates.items():
        if value is None and field != "description":
            continue
        setattr(db_step, field, value)

    db_step = storage.steps.update(db_step)
    return _to_step(db_step)


@router.delete("/workflows/{workflow_id}/steps/{step_id}")
async def delete_step(workflow_id: int, step_id: int, db: Session = Depends(get_db)):
    """
    Delete a step. Actions bound to it must be removed or rebound first.
    """
    storage = StorageService(db)
    _check_workflow_mutable(_get_workflow_or_404(storage, workflow_id))
    _get_step_or_404(storage, workflow_id, step_id)
    if storage.actions.get_by_step(step_id):
        raise HTTPException(status_code=409, detail="Step still has actions bound to it")
    storage.steps.delete(step_id)
    return {"message": "Step deleted"}


# ============================================================================
# Condition Endpoints
# ============================================================================

@router.post("/workflows/{workflow_id}/conditions", response_model=Condition)
async def create_condition(workflow_id: int, request: ConditionCreateRequest,
                           db: Session = Depends(get_db)):
    """
    Add a condition to a workflow.
    """
    storage = StorageService(db)
    _check_workflow_mutable(_get_workflow_or_404(storage, workflow_id))
    try:
        validate_condition(request.condition_type.value, request.operator.value, request.value)
    except ValidationError as exc:
        raise _validation_error(exc)

    db_condition = storage.add_condition(
        workflow_id=workflow_id,
        condition_type=request.condition_type.value,
        symbol=request.symbol,
        operator=request.operator.value,
        value=request.value,
        timeframe=request.timeframe,
        lookback_period=request.lookback_period,
        is_enabled=request.is_enabled,
    )
    return _to_condition(db_condition)


@router.get("/workflows/{workflow_id}/conditions/{condition_id}", response_model=Condition)
async def get_condition(workflow_id: int, condition_id: int, db: Session = Depends(get_db)):
    storage = StorageService(db)
    _get_workflow_or_404(storage, workflow_id)
    return _to_condition(_get_condition_or_404(storage, workflow_id, condition_id))


@router.put("/workflows/{workflow_id}/conditions/{condition_id}", response_model=Condition)
async def update_condition(workflow_id: int, condition_id: int, request: ConditionUpdateRequest,
                           db: Session = Depends(get_db)):
    """
    Update a condition. The merged definition is validated before saving.
    """
    storage = StorageService(db)
    _check_workflow_mutable(_get_workflow_or_404(storage, workflow_id))
    db_condition = _get_condition_or_404(storage, workflow_id, condition_id)

    updates = {k: _enum_value(v) for k, v in request.model_dump(exclude_unset=True).items()}
    merged_type = updates.get("condition_type") or db_condition.condition_type
    merged_operator = updates.get("operator") or db_condition.operator
    merged_value = updates.get("value") or db_condition.value
    try:
        validate_condition(merged_type, merged_operator, merged_value)
    except ValidationError as exc:
        raise _validation_error(exc)

    for field, value in updates.items():
        if value is None and field not in ("timeframe", "lookback_period"):
            continue
        setattr(db_condition, field, value)

    db_condition = storage.conditions.update(db_condition)
    return _to_condition(db_condition)


@router.delete("/workflows/{workflow_id}/conditions/{condition_id}")
async def delete_condition(workflow_id: int, condition_id: int, db: Session = Depends(get_db)):
    """
    Delete a condition that no condition step references.
    """
    storage = StorageService(db)
    _check_workflow_mutable(_get_workflow_or_404(storage, workflow_id))
    _get_condition_or_404(storage, workflow_id, condition_id)
    for step in storage.get_ordered_steps(workflow_id):
        if StepTypeEnum(step.step_type) == StepTypeEnum.CONDITION and \
                condition_id in (step.config or {}).get("condition_ids", []):
            raise HTTPException(status_code=409, detail=f"Condition is referenced by step {step.id}")
    storage.conditions.delete(condition_id)
    return {"message": "Condition deleted"}


# ============================================================================
# Action Endpoints
# ============================================================================

@router.post("/workflows/{workflow_id}/actions", response_model=Action)
async def create_action(workflow_id: int, request: ActionCreateRequest, db: Session = Depends(get_db)):
    """
    Add an action to a workflow, bound to one of its steps.
    """
    storage = StorageService(db)
    _check_workflow_mutable(_get_workflow_or_404(storage, workflow_id))
    step = storage.steps.get_by_id(request.step_id)
    if not step or step.workflow_id != workflow_id:
        raise HTTPException(status_code=400, detail=f"Step {request.step_id} does not belong to workflow {workflow_id}")

    action_type = ActionTypeEnum(request.action_type.value)
    _check_action_fields(action_type, request.symbol, request.quantity, request.price, request.additional_params)

    db_action = storage.add_action(
        workflow_id=workflow_id,
        step_id=request.step_id,
        action_type=action_type.value,
        symbol=request.symbol,
        quantity=request.quantity,
        price=request.price,
        order_type=request.order_type,
        duration=request.duration,
        additional_params=request.additional_params,
        is_enabled=request.is_enabled,
    )
    return _to_action(db_action)


@router.get("/workflows/{workflow_id}/actions/{action_id}", response_model=Action)
async def get_action(workflow_id: int, action_id: int, db: Session = Depends(get_db)):
    """Get one action of a workflow."""
    storage = StorageService(db)
    _get_workflow_or_404(storage, workflow_id)
    return _to_action(_get_action_or_404(storage, workflow_id, action_id))


@router.put("/workflows/{workflow_id}/actions/{action_id}", response_model=Action)
async def update_action(workflow_id: int, action_id: int, request: ActionUpdateRequest,
                        db: Session = Depends(get_db)):
    """
    Update an action. The merged definition is validated before saving.
    """
    storage = StorageService(db)
    _check_workflow_mutable(_get_workflow_or_404(storage, workflow_id))
    db_action = _get_action_or_404(storage, workflow_id, action_id)

    updates = request.model_dump(exclude_unset=True)
    if updates.get("step_id") is not None:
        _get_step_or_404(storage, workflow_id, updates["step_id"])

    merged = {
        field: updates[field] if field in updates else getattr(db_action, field)
        for field in ("symbol", "quantity", "price", "additional_params")
    }
    _check_action_fields(ActionTypeEnum(db_action.action_type), **merged)

    for field, value in updates.items():
        if value is None and field in ("step_id", "is_enabled"):
            continue
        setattr(db_action, field, value)
    if "additional_params" in updates:
        flag_modified(db_action, "additional_params")

    db_action = storage.actions.update(db_action)
    return _to_action(db_action)


@router.delete("/workflows/{workflow_id}/actions/{action_id}")
async def delete_action(workflow_id: int, action_id: int, db: Session = Depends(get_db)):
    """
    Delete an action.
    """
    storage = StorageService(db)
    _check_workflow_mutable(_get_workflow_or_404(storage, workflow_id))
    _get_action_or_404(storage, workflow_id, action_id)
    storage.actions.delete(action_id)
    return {"message": "Action deleted"}


# ============================================================================
# Audit Log Endpoints
# ============================================================================

@router.get("/audit/logs", response_model=AuditLogsResponse)
async def get_audit_logs(
    limit: int = Query(default=100, ge=1, le=1000),
    event_type: Optional[AuditEventType] = None,
    workflow_id: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db)
):
    """
    Get audit logs from database with filtering and pagination.
    """
    storage = StorageService(db)

    event_type_str = event_type.value if event_type else None
    db_logs = storage.get_audit_logs(limit=limit, event_type=event_type_str, workflow_id=workflow_id)
    total_count = storage.count_audit_logs(event_type=event_type_str, workflow_id=workflow_id)

    logs = []
    for db_log in db_logs:
        logs.append(AuditLog(
            id=str(db_log.id),
            timestamp=_ensure_utc_datetime(db_log.timestamp),
            event_type=AuditEventType(_enum_value(db_log.event_type)),
            description=db_log.description,
            workflow_id=db_log.workflow_id,
            order_id=db_log.order_id,
            details=db_log.details or {},
        ))

    return AuditLogsResponse(
        logs=logs,
        total_count=total_count,
    )

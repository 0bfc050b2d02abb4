"""
Workflow status state machine.

inactive -> active -> (paused <-> active) -> archived; archived is terminal.
"""

import logging
from typing import Dict, FrozenSet, Tuple

from engine.errors import InvalidStatusTransition, WorkflowNotFound
from storage.models import TriggerSourceEnum, Workflow, WorkflowStatusEnum
from storage.service import StorageService

logger = logging.getLogger(__name__)

_S = WorkflowStatusEnum

TRANSITIONS: Dict[str, Tuple[FrozenSet[WorkflowStatusEnum], WorkflowStatusEnum]] = {
    "activate": (frozenset({_S.INACTIVE, _S.PAUSED}), _S.ACTIVE),
    "pause": (frozenset({_S.ACTIVE}), _S.PAUSED),
    "deactivate": (frozenset({_S.ACTIVE, _S.PAUSED}), _S.INACTIVE),
    "archive": (frozenset({_S.INACTIVE, _S.ACTIVE, _S.PAUSED}), _S.ARCHIVED),
}


def is_runnable(status: WorkflowStatusEnum, trigger: TriggerSourceEnum,
                allow_manual_when_paused: bool = True) -> bool:
    """Active workflows run for any trigger; paused ones only on a manual trigger when allowed."""
    status = WorkflowStatusEnum(status)
    if status == _S.ACTIVE:
        return True
    return status == _S.PAUSED and trigger == TriggerSourceEnum.MANUAL and allow_manual_when_paused


def apply_transition(storage: StorageService, workflow_id: int, operation: str) -> Workflow:
    """
    Move a workflow to a new status.

    Raises:
        WorkflowNotFound: unknown workflow id
        InvalidStatusTransition: operation not allowed from the current status
    """
    if operation not in TRANSITIONS:
        raise InvalidStatusTransition(f"Unknown status operation: {operation}")
    workflow = storage.get_workflow(workflow_id)
    if workflow is None:
        raise WorkflowNotFound(f"Workflow {workflow_id} not found")

    allowed_from, target = TRANSITIONS[operation]
    current = WorkflowStatusEnum(workflow.status)
    if current not in allowed_from:
        raise InvalidStatusTransition(
            f"Cannot {operation} workflow {workflow_id} from status {current.value}"
        )

    workflow.status = target
    workflow = storage.workflows.update(workflow)
    storage.create_audit_log(
        event_type="workflow_status_changed",
        description=f"Workflow {workflow_id} {current.value} -> {target.value}",
        details={"operation": operation, "from": current.value, "to": target.value},
        user_id=workflow.user_id,
        workflow_id=workflow_id,
    )
    logger.info("Workflow %s status %s -> %s", workflow_id, current.value, target.value)
    return workflow

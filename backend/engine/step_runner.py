"""
Step Runner.
Dispatches a workflow step by type and applies the step's retry policy.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from engine.actions import ActionExecutor
from engine.conditions import ConditionEvaluator
from engine.configs import (
    ActionStepConfig,
    ConditionStepConfig,
    DelayStepConfig,
    NotificationStepConfig,
    parse_step_config,
)
from engine.errors import ConfigValidationError, ReferenceIntegrityError, is_retryable
from services.notification_delivery import NotificationPayload
from services.portfolio import AccountSnapshot
from storage.models import StepResultEnum, StepTypeEnum, WorkflowStep
from storage.service import StorageService

logger = logging.getLogger(__name__)

SUCCESS = StepResultEnum.SUCCESS.value
FAILURE = StepResultEnum.FAILURE.value
SKIPPED = StepResultEnum.SKIPPED.value


@dataclass
class StepContext:
    """Per-run state shared by the steps of one workflow run."""
    workflow_id: int
    storage: StorageService
    snapshot: AccountSnapshot = field(default_factory=AccountSnapshot)


@dataclass
class StepResult:
    """Final outcome of one step, after retries."""
    step_id: int
    step_type: str
    status: str
    duration_ms: int = 0
    attempts: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    outcome: Dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> Optional[bool]:
        """Gate result of a condition step; None for other step types."""
        return self.outcome.get("passed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_type": self.step_type,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
            "error": self.error,
            "error_type": self.error_type,
            "outcome": self.outcome,
        }


class StepRunner:
    """
    Runs one step at a time.

    On failure, a retryable error is re-attempted immediately while
    `retry_count < max_retries`; validation and fatal errors are not retried.
    """

    def __init__(
        self,
        evaluator: ConditionEvaluator,
        executor: ActionExecutor,
        max_delay_seconds: float = 3600.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.evaluator = evaluator
        self.executor = executor
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep

    async def run_step(self, step: WorkflowStep, context: StepContext) -> StepResult:
        step_type = StepTypeEnum(step.step_type)
        if not step.is_enabled:
            logger.info("Step %s (%s) disabled, skipped", step.id, step_type.value)
            result = StepResult(step_id=step.id, step_type=step_type.value, status=SKIPPED,
                                outcome={"reason": "step disabled"})
            self._record(step, result, context)
            return result

        step.retry_count = 0
        attempts = 0
        # Actions that already succeeded are not repeated by a retry.
        completed_actions: Set[int] = set()
        while True:
            attempts += 1
            started = time.monotonic()
            try:
                status, outcome = await self._dispatch(step, step_type, context, completed_actions)
            except Exception as exc:
                duration_ms = int((time.monotonic() - started) * 1000)
                if is_retryable(exc) and step.retry_count < step.max_retries:
                    step.retry_count += 1
                    logger.warning(
                        "Step %s attempt %d failed (%s: %s); retry %d/%d",
                        step.id, attempts, type(exc).__name__, exc, step.retry_count, step.max_retries,
                    )
                    continue
                logger.error(
                    "Step %s (%s) failed after %d attempt(s): %s: %s",
                    step.id, step_type.value, attempts, type(exc).__name__, exc,
                    extra={"workflow_id": context.workflow_id, "step_id": step.id},
                )
                result = StepResult(
                    step_id=step.id,
                    step_type=step_type.value,
                    status=FAILURE,
                    duration_ms=duration_ms,
                    attempts=attempts,
                    error=str(exc) or type(exc).__name__,
                    error_type=type(exc).__name__,
                    outcome={"completed_actions": sorted(completed_actions)} if completed_actions else {},
                )
                break

            result = StepResult(
                step_id=step.id,
                step_type=step_type.value,
                status=status,
                duration_ms=int((time.monotonic() - started) * 1000),
                attempts=attempts,
                outcome=outcome,
            )
            logger.info("Step %s (%s) %s in %d attempt(s)", step.id, step_type.value, status, attempts,
                        extra={"workflow_id": context.workflow_id, "step_id": step.id})
            break

        self._record(step, result, context)
        return result

    def _record(self, step: WorkflowStep, result: StepResult, context: StepContext) -> None:
        step.last_result = StepResultEnum(result.status)
        step.execution_time = result.duration_ms
        step.error_message = result.error
        if result.status == SKIPPED:
            step.retry_count = 0
        context.storage.steps.update(step)

    async def _dispatch(self, step: WorkflowStep, step_type: StepTypeEnum, context: StepContext,
                        completed_actions: Set[int]) -> Tuple[str, Dict[str, Any]]:
        config = parse_step_config(step_type, step.config)
        if step_type == StepTypeEnum.CONDITION:
            return await self._run_conditions(config, context)
        if step_type == StepTypeEnum.ACTION:
            return await self._run_actions(step, config, context, completed_actions)
        if step_type == StepTypeEnum.NOTIFICATION:
            return await self._run_notification(config, context)
        return await self._run_delay(config)

    async def _run_conditions(self, config: ConditionStepConfig,
                              context: StepContext) -> Tuple[str, Dict[str, Any]]:
        conditions = []
        for condition_id in config.condition_ids:
            condition = context.storage.conditions.get_by_id(condition_id)
            if condition is None or condition.workflow_id != context.workflow_id:
                raise ReferenceIntegrityError(
                    f"Condition {condition_id} does not belong to workflow {context.workflow_id}"
                )
            conditions.append(condition)

        results = [await self.evaluator.evaluate(condition) for condition in conditions]
        details = [
            {"condition_id": r.condition_id, "result": r.result, "observed": r.observed}
            for r in results
        ]
        applicable = [r.result for r in results if not r.skipped]
        if not applicable:
            return SKIPPED, {"mode": config.mode, "conditions": details, "reason": "all conditions disabled"}

        passed = all(applicable) if config.mode == "all" else any(applicable)
        return SUCCESS, {"passed": passed, "mode": config.mode, "conditions": details}

    async def _run_actions(self, step: WorkflowStep, config: ActionStepConfig, context: StepContext,
                           completed_actions: Set[int]) -> Tuple[str, Dict[str, Any]]:
        if config.action_ids is None:
            actions = context.storage.actions.get_by_step(step.id)
        else:
            actions = []
            for action_id in config.action_ids:
                action = context.storage.actions.get_by_id(action_id)
                if action is None:
                    raise ReferenceIntegrityError(f"Action {action_id} does not exist")
                actions.append(action)
        for action in actions:
            if action.workflow_id != context.workflow_id:
                raise ReferenceIntegrityError(
                    f"Action {action.id} does not belong to workflow {context.workflow_id}"
                )

        outcomes: List[Dict[str, Any]] = []
        executed = 0
        for action in actions:
            if action.id in completed_actions:
                outcomes.append({"action_id": action.id, "status": SUCCESS, "message": "completed on an earlier attempt"})
                executed += 1
                continue
            outcome = await self.executor.execute(action, context.snapshot, workflow_id=context.workflow_id)
            outcomes.append(outcome.to_dict())
            if outcome.status == SUCCESS:
                completed_actions.add(action.id)
                executed += 1

        if executed == 0:
            return SKIPPED, {"actions": outcomes, "reason": "no enabled actions"}
        return SUCCESS, {"actions": outcomes}

    async def _run_notification(self, config: NotificationStepConfig,
                                context: StepContext) -> Tuple[str, Dict[str, Any]]:
        payload = NotificationPayload(
            message=config.message,
            recipient=config.recipient,
            subject=config.subject,
            workflow_id=context.workflow_id,
        )
        detail = await self.executor.send_notification(config.channel, payload)
        return SUCCESS, {"channel": config.channel, "detail": detail}

    async def _run_delay(self, config: DelayStepConfig) -> Tuple[str, Dict[str, Any]]:
        if config.seconds > self.max_delay_seconds:
            raise ConfigValidationError(
                f"Delay of {config.seconds:g}s exceeds the maximum of {self.max_delay_seconds:g}s"
            )
        await self._sleep(config.seconds)
        return SUCCESS, {"slept_seconds": config.seconds}

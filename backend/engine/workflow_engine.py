"""
Workflow Engine.

Runs a workflow's steps in order and writes exactly one execution log per
run request. The engine is the only writer of the workflow's run
bookkeeping (execution_count, last_executed_at, log_history).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from engine.errors import (
    ConfigValidationError,
    RunRejected,
    WorkflowNotFound,
    WorkflowNotRunnable,
)
from engine.lifecycle import apply_transition, is_runnable
from engine.run_registry import WorkflowRunRegistry
from engine.step_runner import FAILURE, SKIPPED, SUCCESS, StepContext, StepRunner
from services.broker import BrokerInterface
from services.portfolio import AccountSnapshot, load_account_snapshot
from storage.models import (
    ExecutionStatusEnum,
    StepTypeEnum,
    TriggerSourceEnum,
    Workflow,
    WorkflowExecutionLog,
)
from storage.service import StorageService

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    Executes workflow runs.

    Runs of one workflow are serialized through the run registry; a request
    arriving while another run of the same workflow is in flight either
    queues behind it (busy_policy="queue") or is rejected with a failed log
    (busy_policy="reject").
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        step_runner: StepRunner,
        broker: Optional[BrokerInterface] = None,
        registry: Optional[WorkflowRunRegistry] = None,
        busy_policy: str = "queue",
        allow_manual_run_when_paused: bool = True,
        log_history_limit: int = 50,
        snapshot_timeout_seconds: float = 10.0,
    ):
        if busy_policy not in ("queue", "reject"):
            raise ValueError(f"Unsupported busy policy: {busy_policy}")
        self.session_factory = session_factory
        self.step_runner = step_runner
        self.broker = broker
        self.registry = registry or WorkflowRunRegistry()
        self.busy_policy = busy_policy
        self.allow_manual_run_when_paused = allow_manual_run_when_paused
        self.log_history_limit = max(1, int(log_history_limit))
        self.snapshot_timeout_seconds = snapshot_timeout_seconds

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run(self, workflow_id: int,
                  triggered_by: Union[TriggerSourceEnum, str] = TriggerSourceEnum.MANUAL) -> WorkflowExecutionLog:
        """
        Run a workflow once.

        Returns:
            The finished execution log (detached from any session)
        """
        trigger = _parse_trigger(triggered_by)

        if self.busy_policy == "reject" and self.registry.is_busy(workflow_id):
            return self._reject(workflow_id, trigger)

        async with self.registry.acquire(workflow_id):
            return await self._execute(workflow_id, trigger)

    async def run_many(self, workflow_ids: Sequence[int],
                       triggered_by: Union[TriggerSourceEnum, str] = TriggerSourceEnum.SCHEDULE,
                       ) -> List[WorkflowExecutionLog]:
        """Run several workflows concurrently; each id gets its own log."""
        return list(await asyncio.gather(*(self.run(wid, triggered_by) for wid in workflow_ids)))

    async def run_automatic(self, triggered_by: Union[TriggerSourceEnum, str] = TriggerSourceEnum.SCHEDULE,
                            ) -> List[WorkflowExecutionLog]:
        """Run every active workflow flagged is_automatic, e.g. from a cron tick."""
        db = self.session_factory()
        try:
            workflow_ids = [wf.id for wf in StorageService(db).workflows.get_automatic()]
        finally:
            db.close()
        logger.info("Scheduled tick: %d automatic workflow(s)", len(workflow_ids))
        return await self.run_many(workflow_ids, triggered_by)

    async def _execute(self, workflow_id: int, trigger: TriggerSourceEnum) -> WorkflowExecutionLog:
        db = self.session_factory()
        try:
            storage = StorageService(db)
            workflow = storage.get_workflow(workflow_id)
            if workflow is None:
                return self._pre_run_failure(
                    storage, workflow_id, trigger, WorkflowNotFound(f"Workflow {workflow_id} not found")
                )
            if not is_runnable(workflow.status, trigger, self.allow_manual_run_when_paused):
                return self._pre_run_failure(
                    storage, workflow_id, trigger,
                    WorkflowNotRunnable(
                        f"Workflow {workflow_id} is {workflow.status.value}; "
                        f"{trigger.value} runs are not allowed"
                    ),
                )

            log = storage.execution_logs.create(workflow_id=workflow_id, triggered_by=trigger)
            logger.info("Run %s of workflow %s started (%s)", log.id, workflow_id, trigger.value,
                        extra={"workflow_id": workflow_id, "log_id": log.id})

            try:
                status, summary, error_message, details = await self._run_steps(storage, workflow_id, trigger)
            except asyncio.CancelledError:
                # No awaits from here on, so the log cannot be left running.
                self._finish_cancelled(db, storage, workflow_id, trigger, log)
                raise

            log = storage.execution_logs.finish(
                log, status, summary=summary, details=details, error_message=error_message
            )
            self._record_run(db, storage, workflow_id, log)
            db.refresh(log)
            logger.info("Run %s of workflow %s %s: %s", log.id, workflow_id, status.value, summary,
                        extra={"workflow_id": workflow_id, "log_id": log.id})
            db.expunge(log)
            return log
        finally:
            db.close()

    async def _run_steps(self, storage: StorageService, workflow_id: int, trigger: TriggerSourceEnum):
        step_results: List[Dict[str, Any]] = []
        details: Dict[str, Any] = {"triggered_by": trigger.value, "steps": step_results, "stopped_early": False}
        try:
            steps = storage.get_ordered_steps(workflow_id)
            symbols = {a.symbol for a in storage.actions.get_by_workflow(workflow_id) if a.symbol}
            snapshot = await self._load_snapshot(symbols)
            context = StepContext(workflow_id=workflow_id, storage=storage, snapshot=snapshot)

            for step in steps:
                result = await self.step_runner.run_step(step, context)
                step_results.append(result.to_dict())

                if result.status == FAILURE:
                    details["failed_step_id"] = step.id
                    summary = (
                        f"Failed at step {step.id} ({step.name}) after {result.attempts} attempt(s)"
                    )
                    error = f"Step {step.id} ({step.name}) {result.error_type}: {result.error}"
                    return ExecutionStatusEnum.FAILED, summary, error, details

                if step.step_type == StepTypeEnum.CONDITION and result.status == SUCCESS and result.passed is False:
                    details["stopped_early"] = True
                    details["stopped_at_step_id"] = step.id
                    summary = f"Stopped early: condition step {step.id} ({step.name}) evaluated false"
                    return ExecutionStatusEnum.COMPLETED, summary, None, details
        except Exception as exc:
            # Only engine-side faults land here; step errors are captured by the step runner.
            logger.exception("Run of workflow %s aborted by an engine error", workflow_id)
            storage.db.rollback()
            return ExecutionStatusEnum.FAILED, "Run aborted by an internal error", f"{type(exc).__name__}: {exc}", details

        ran = sum(1 for r in step_results if r["status"] == SUCCESS)
        skipped = sum(1 for r in step_results if r["status"] == SKIPPED)
        summary = f"Completed {len(step_results)} step(s): {ran} succeeded, {skipped} skipped"
        return ExecutionStatusEnum.COMPLETED, summary, None, details

    def _finish_cancelled(self, db: Session, storage: StorageService, workflow_id: int,
                          trigger: TriggerSourceEnum, log: WorkflowExecutionLog) -> None:
        """Close the log of a run whose task was cancelled mid-flight; it still counts as a run."""
        db.rollback()
        log = storage.execution_logs.finish(
            log,
            ExecutionStatusEnum.FAILED,
            summary="Run cancelled before completion",
            details={"triggered_by": trigger.value, "reason": "cancelled", "steps": []},
            error_message="CancelledError: run was cancelled",
        )
        self._record_run(db, storage, workflow_id, log)
        logger.warning("Run %s of workflow %s cancelled", log.id, workflow_id,
                       extra={"workflow_id": workflow_id, "log_id": log.id})

    async def _load_snapshot(self, symbols) -> AccountSnapshot:
        if self.broker is None:
            return AccountSnapshot()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(load_account_snapshot, self.broker, sorted(symbols)),
                timeout=self.snapshot_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Account snapshot timed out after %gs; formulas will not resolve",
                           self.snapshot_timeout_seconds)
            return AccountSnapshot()

    def _record_run(self, db: Session, storage: StorageService, workflow_id: int,
                    log: WorkflowExecutionLog) -> None:
        """Bump run bookkeeping on the current workflow row."""
        workflow: Optional[Workflow] = storage.get_workflow(workflow_id)
        if workflow is None:
            logger.warning("Workflow %s was deleted during run %s", workflow_id, log.id)
            return
        # Re-read so a status change committed elsewhere mid-run is kept.
        db.refresh(workflow)
        workflow.execution_count = (workflow.execution_count or 0) + 1
        workflow.last_executed_at = log.execution_end_time
        history = list(workflow.log_history or [])
        history.append({
            "log_id": log.id,
            "status": log.status.value,
            "triggered_by": log.triggered_by.value,
            "started_at": log.execution_start_time.isoformat(),
            "ended_at": log.execution_end_time.isoformat() if log.execution_end_time else None,
            "summary": log.summary,
        })
        workflow.log_history = history[-self.log_history_limit:]
        storage.workflows.update(workflow)

    # ------------------------------------------------------------------
    # Runs that never start
    # ------------------------------------------------------------------

    def _pre_run_failure(self, storage: StorageService, workflow_id: int, trigger: TriggerSourceEnum,
                         error: Exception) -> WorkflowExecutionLog:
        """Write the failed log of a run that could not start; counters are untouched."""
        log = storage.execution_logs.create(workflow_id=workflow_id, triggered_by=trigger)
        log = storage.execution_logs.finish(
            log,
            ExecutionStatusEnum.FAILED,
            summary=f"Run not started: {error}",
            details={"triggered_by": trigger.value, "reason": type(error).__name__, "steps": []},
            error_message=str(error),
        )
        logger.warning("Run of workflow %s not started (%s): %s", workflow_id, trigger.value, error)
        storage.db.expunge(log)
        return log

    def _reject(self, workflow_id: int, trigger: TriggerSourceEnum) -> WorkflowExecutionLog:
        db = self.session_factory()
        try:
            storage = StorageService(db)
            error = RunRejected(
                f"Workflow {workflow_id} already has a run in progress; {trigger.value} trigger rejected"
            )
            storage.create_audit_log(
                event_type="workflow_run_rejected",
                description=str(error),
                details={"triggered_by": trigger.value, "pending_runs": self.registry.pending(workflow_id)},
                workflow_id=workflow_id,
            )
            return self._pre_run_failure(storage, workflow_id, trigger, error)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Status operations
    # ------------------------------------------------------------------

    def _transition(self, workflow_id: int, operation: str, db: Optional[Session] = None) -> Workflow:
        own_session = db is None
        session = self.session_factory() if own_session else db
        try:
            workflow = apply_transition(StorageService(session), workflow_id, operation)
            if own_session:
                # The audit commit expired the row; load it before detaching.
                session.refresh(workflow)
                session.expunge(workflow)
            return workflow
        finally:
            if own_session:
                session.close()

    def activate(self, workflow_id: int, db: Optional[Session] = None) -> Workflow:
        return self._transition(workflow_id, "activate", db)

    def pause(self, workflow_id: int, db: Optional[Session] = None) -> Workflow:
        return self._transition(workflow_id, "pause", db)

    def deactivate(self, workflow_id: int, db: Optional[Session] = None) -> Workflow:
        return self._transition(workflow_id, "deactivate", db)

    def archive(self, workflow_id: int, db: Optional[Session] = None) -> Workflow:
        return self._transition(workflow_id, "archive", db)


def _parse_trigger(triggered_by: Union[TriggerSourceEnum, str]) -> TriggerSourceEnum:
    try:
        return TriggerSourceEnum(triggered_by)
    except ValueError as exc:
        raise ConfigValidationError(
            f"Unknown trigger {triggered_by!r}; expected one of "
            f"{', '.join(t.value for t in TriggerSourceEnum)}"
        ) from exc

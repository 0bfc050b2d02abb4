"""
Workflow engine module.

Core components:
- Condition evaluator (engine.conditions)
- Action executor (engine.actions)
- Step runner with retries (engine.step_runner)
- Workflow engine and run registry (engine.workflow_engine, engine.run_registry)

Only the error taxonomy is re-exported here; services import it, and the
components above import services.
"""

from engine.errors import (
    WorkflowError,
    ValidationError,
    TransientError,
    FatalError,
    is_retryable,
)

__all__ = [
    "WorkflowError",
    "ValidationError",
    "TransientError",
    "FatalError",
    "is_retryable",
]

"""
Workflow engine error taxonomy.

ValidationError  - malformed condition/action/step configuration; never retried.
TransientError   - timeouts and temporary collaborator outages; retried by the step runner.
FatalError       - missing workflow/step or broken references; aborts the run, no retry.
"""


class WorkflowError(Exception):
    """Base exception for workflow engine errors."""
    pass


class ValidationError(WorkflowError):
    """Raised when a workflow component is misconfigured."""
    pass


class TransientError(WorkflowError):
    """Raised when an external collaborator is temporarily unavailable."""
    pass


class FatalError(WorkflowError):
    """Raised when a run cannot proceed at all."""
    pass


# Validation errors

class ConfigValidationError(ValidationError):
    """Step config or action parameters do not match their typed schema."""
    pass


class ConditionValidationError(ValidationError):
    """Condition is missing a field it needs to be evaluated."""
    pass


class InvalidOperator(ValidationError):
    """Condition operator is not one of the supported operators."""
    pass


class MalformedValue(ValidationError):
    """Condition comparison value cannot be parsed for its operator."""
    pass


class FormulaSyntaxError(ValidationError):
    """Formula-valued field does not follow the percentage-of-reference grammar."""
    pass


class UnresolvedFormula(ValidationError):
    """Formula references data missing from the account snapshot."""
    pass


class InvalidStatusTransition(ValidationError):
    """Requested workflow status change is not allowed from the current status."""
    pass


class ActionRejected(ValidationError):
    """A collaborator refused the action outright; retrying would not change the answer."""
    pass


# Transient errors

class DataUnavailable(TransientError):
    """Market data provider has no data for the symbol/timeframe pair."""
    pass


class InsufficientHistory(TransientError):
    """Crossing operators need at least two samples."""
    pass


class ActionTimeout(TransientError):
    """External collaborator call exceeded its time budget."""
    pass


class DeliveryFailed(TransientError):
    """Notification transport reported a failed delivery."""
    pass


# Fatal errors

class WorkflowNotFound(FatalError):
    """Workflow id does not exist."""
    pass


class StepNotFound(FatalError):
    """Step id does not exist."""
    pass


class ReferenceIntegrityError(FatalError):
    """A step references a condition or action that is missing or belongs elsewhere."""
    pass


class WorkflowNotRunnable(FatalError):
    """Workflow status does not allow a run for the given trigger."""
    pass


class RunRejected(FatalError):
    """A run was refused because another run of the same workflow is in flight."""
    pass


class OrderOutcomeUnknown(ActionTimeout, FatalError):
    """
    An order submission timed out after it may have reached the broker.

    The late submission can still fill, so the step is not retried; the
    order row (if any) is the source of truth.
    """
    pass


def is_retryable(exc: BaseException) -> bool:
    """Everything except validation and fatal errors may be retried."""
    return not isinstance(exc, (ValidationError, FatalError))
